# Web3 Pi UPS - MQTT Bridge
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Follows the daemon's broadcast socket and republishes every sample to an
# MQTT broker for HomeAssistant integration, including discovery configs and
# an availability topic that tracks the daemon connection.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""
MQTT bridge for the Web3 Pi UPS
Publishes UPS status data for HomeAssistant integration

The bridge is just another observer of the daemon's broadcast socket: it
never talks to the serial port and has no say in shutdown decisions. When the
daemon connection drops the availability topic goes offline and the bridge
reconnects with a capped exponential backoff.

Usage:
    w3p-ups mqtt --config /etc/w3p-ups/config.toml
"""
from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt

from .client import DaemonClient
from .config import BatterySettings, MqttSettings
from .parser import ParseError, UPSSample
from .policy import power_state

log = logging.getLogger(__name__)

CLIENT_ID = "w3p_ups_bridge"

DEVICE_CONFIG = {
    "identifiers": ["w3p_ups"],
    "name": "Web3 Pi UPS",
    "manufacturer": "Web3 Pi",
    "model": "UPS",
}

# sensor id -> (name, unit, device_class)
SENSORS: Dict[str, tuple] = {
    "state_of_charge": ("UPS State of Charge", "%", "battery"),
    "shutdown_level": ("UPS Shutdown Level", "%", "battery"),
    "battery_voltage": ("UPS Battery Voltage", "V", "voltage"),
    "input_voltage": ("UPS Input Voltage", "V", "voltage"),
    "battery_current": ("UPS Battery Current", "mA", "current"),
    "temperature": ("UPS Temperature", "°C", "temperature"),
    "uptime": ("UPS Uptime", "s", "duration"),
    "power_source": ("UPS Power Source", None, None),
    "charging_state": ("UPS Charging State", None, None),
}


def sample_to_state(sample: UPSSample, battery: BatterySettings) -> Dict[str, Any]:
    """Flatten a sample into the JSON state document HomeAssistant reads."""
    return {
        "state_of_charge": sample.soc,
        "shutdown_level": sample.shutdown_soc,
        "battery_voltage": round(sample.battery_voltage_v, 3),
        "input_voltage": round(sample.input_voltage_v, 3),
        "battery_current": sample.battery_current,
        "temperature": round(sample.temperature_c, 1),
        "uptime": sample.uptime,
        "power_source": power_state(sample, battery).value.lower(),
        "charging_state": sample.charging_label,
    }


class MQTTBridge:
    def __init__(self, settings: MqttSettings, battery: BatterySettings, socket_path: str,
                 stop: Optional[threading.Event] = None):
        self.settings = settings
        self.battery = battery
        self.socket_path = socket_path
        self.stop = stop if stop is not None else threading.Event()
        self.state_topic = f"{settings.topic_prefix}/state"
        self.availability_topic = f"{settings.topic_prefix}/availability"
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=CLIENT_ID)
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        self.published = 0

    def on_connect(self, client, userdata, connect_flags, reason_code, properties):
        """Callback for when the client connects to the broker"""
        if reason_code == 0:
            log.info("Connected to MQTT broker at %s:%s", self.settings.host, self.settings.port)
            self.publish_config()
        else:
            log.error("Failed to connect to MQTT broker, return code %s", reason_code)

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        log.info("Disconnected from MQTT broker (code: %s)", reason_code)

    def discovery_configs(self) -> Dict[str, Dict[str, Any]]:
        configs = {}
        for sensor_id, (name, unit, device_class) in SENSORS.items():
            config: Dict[str, Any] = {
                "name": name,
                "state_topic": self.state_topic,
                "value_template": "{{ value_json.%s }}" % sensor_id,
                "availability_topic": self.availability_topic,
                "unique_id": f"w3p_ups_{sensor_id}",
                "device": DEVICE_CONFIG,
            }
            if unit is not None:
                config["unit_of_measurement"] = unit
                config["state_class"] = "measurement"
            if device_class is not None:
                config["device_class"] = device_class
            topic = f"{self.settings.discovery_prefix}/sensor/w3p_ups/{sensor_id}/config"
            configs[topic] = config
        return configs

    def publish_config(self) -> None:
        """Publish sensor configurations for HomeAssistant autodiscovery"""
        for topic, config in self.discovery_configs().items():
            self.client.publish(topic, json.dumps(config), qos=1, retain=True)
        log.debug("Published %d discovery configs", len(SENSORS))

    def set_available(self, online: bool) -> None:
        self.client.publish(self.availability_topic, "online" if online else "offline", qos=1, retain=True)

    def publish_sample(self, sample: UPSSample) -> None:
        payload = json.dumps(sample_to_state(sample, self.battery))
        self.client.publish(self.state_topic, payload, qos=1, retain=True)
        self.published += 1

    def connect(self) -> None:
        if self.settings.username and self.settings.password:
            self.client.username_pw_set(self.settings.username, self.settings.password)
        self.client.will_set(self.availability_topic, "offline", qos=1, retain=True)
        log.debug("Connecting to MQTT broker at %s:%s...", self.settings.host, self.settings.port)
        self.client.connect(self.settings.host, self.settings.port, keepalive=60)
        self.client.loop_start()

    def disconnect(self) -> None:
        log.info("Shutting down MQTT bridge...")
        self.set_available(False)
        self.client.loop_stop()
        self.client.disconnect()

    def follow(self, daemon: DaemonClient) -> None:
        """Republish samples from one daemon connection until it drops."""
        self.set_available(True)
        try:
            while not self.stop.is_set():
                try:
                    sample = daemon.read_sample()
                except TimeoutError:
                    continue
                except ParseError as exc:
                    log.debug("ignoring bad line from daemon: %s", exc)
                    continue
                self.publish_sample(sample)
        finally:
            self.set_available(False)

    def run(self) -> None:
        """Main loop - reconnect to the daemon and keep republishing."""
        self.connect()
        backoff = 1.0
        try:
            while not self.stop.is_set():
                try:
                    with DaemonClient(self.socket_path) as daemon:
                        log.info("Following daemon stream on %s", self.socket_path)
                        backoff = 1.0
                        self.follow(daemon)
                except OSError as exc:
                    log.warning("Daemon connection lost: %s", exc)
                self.stop.wait(backoff)
                backoff = min(backoff * 2, 30.0)
        finally:
            self.disconnect()
