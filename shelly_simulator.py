#!/usr/bin/env python3
"""
Shelly Device Simulator for MQTT Telemetry Testing
Simulates a Shelly relay that reports its state in one of the payload shapes
the server understands and obeys on/off commands on <topic>/command.
"""

import argparse
import json
import random
import time
import paho.mqtt.client as mqtt

# Configuration
MQTT_BROKER = "localhost"
MQTT_PORT = 1883
MQTT_KEEPALIVE = 60
DEFAULT_TOPIC = "shellies/plug/bedroom_heater"
HEARTBEAT_INTERVAL = 30  # seconds

SHAPES = ("relay_state", "relay0", "ison")


def build_status_payload(shape, is_on, power):
    """Status message in one of the three relay shapes, with a power reading."""
    if shape == "relay_state":
        return {"relay_state": 1 if is_on else 0, "power": power}
    if shape == "relay0":
        return {"relay0": {"ison": is_on}, "power0": power}
    if shape == "ison":
        return {"ison": is_on, "power": power}
    raise ValueError(f"Unknown payload shape: {shape}")


def parse_command(payload):
    """Return True/False for an on/off command, None for anything else."""
    text = payload.decode(errors="replace").strip().lower() if isinstance(payload, bytes) else str(payload).strip().lower()
    if text == "on":
        return True
    if text == "off":
        return False
    return None


class ShellySimulator:
    def __init__(self, topic=DEFAULT_TOPIC, shape="relay_state", rated_power=1200.0):
        self.topic = topic
        self.status_topic = f"{topic}/status"
        self.command_topic = f"{topic}/command"
        self.shape = shape
        self.rated_power = rated_power
        self.is_on = False
        self.client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
        self.client.on_connect = self.on_connect
        self.client.on_message = self.on_message
        self.client.on_disconnect = self.on_disconnect

    def current_power(self):
        if not self.is_on:
            return 0
        return round(self.rated_power * random.uniform(0.9, 1.05), 1)

    def on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            print(f"Failed to connect: {reason_code}")
            return
        print(f"Connected to MQTT broker (Code: {reason_code})")
        client.subscribe(self.command_topic)
        print(f"Subscribed to: {self.command_topic}")
        self.send_status()

    def on_message(self, client, userdata, msg):
        requested = parse_command(msg.payload)
        if requested is None:
            print(f"Ignoring command: {msg.payload!r}")
            return
        print(f"Relay {'on' if self.is_on else 'off'} -> {'on' if requested else 'off'}")
        self.is_on = requested
        time.sleep(0.2)  # Simulate relay switching delay
        self.send_status()

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            print(f"Unexpected disconnection: {reason_code}")
        else:
            print(f"Disconnected from MQTT broker (Code: {reason_code})")

    def send_status(self):
        payload = build_status_payload(self.shape, self.is_on, self.current_power())
        self.client.publish(self.status_topic, json.dumps(payload))
        print(f"Sent status on {self.status_topic}: {payload}")

    def run(self, broker=MQTT_BROKER, port=MQTT_PORT):
        print(f"Starting Shelly simulator on {self.topic} ({self.shape} payloads)")
        print(f"Broker: {broker}:{port}")
        print("-" * 50)
        self.client.connect(broker, port, MQTT_KEEPALIVE)
        self.client.loop_start()
        try:
            last_heartbeat = time.time()
            while True:
                if time.time() - last_heartbeat >= HEARTBEAT_INTERVAL:
                    self.send_status()
                    last_heartbeat = time.time()
                time.sleep(1)
        except KeyboardInterrupt:
            print("\nShutting down...")
        finally:
            self.client.loop_stop()
            self.client.disconnect()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Simulate a Shelly relay over MQTT")
    parser.add_argument("--topic", default=DEFAULT_TOPIC)
    parser.add_argument("--shape", choices=SHAPES, default="relay_state")
    parser.add_argument("--broker", default=MQTT_BROKER)
    parser.add_argument("--port", type=int, default=MQTT_PORT)
    args = parser.parse_args()
    ShellySimulator(topic=args.topic, shape=args.shape).run(args.broker, args.port)
