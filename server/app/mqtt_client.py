# server/app/mqtt_client.py

import  asyncio
from    typing              import Callable, Iterable, Optional, Set
from    paho.mqtt           import client as mqtt_client
from    config.settings     import Settings
from    utils.logger        import getLogger

logger      = getLogger("MQTTClient")


class MQTTClient:
    """
    Telemetry bus transport.

    Created with its settings and a telemetry callback, then started and
    stopped explicitly by the application lifecycle. Inbound messages are
    handed to `on_telemetry(topic, payload)`; outbound commands go through
    `publish`, which never waits for the device.
    """

    def __init__(self, settings: Settings, on_telemetry: Callable[[str, bytes], None],
                 device_topics: Optional[Callable[[], Iterable[str]]] = None):
        self.settings = settings
        self.on_telemetry = on_telemetry
        self.device_topics = device_topics or (lambda: [])
        self.subscriptions: Set[str] = set()
        self.connected = False
        self.loop: Optional[asyncio.AbstractEventLoop] = None

        self.client = mqtt_client.Client(
            callback_api_version    = mqtt_client.CallbackAPIVersion.VERSION2,
            client_id               = settings.mqtt_client_id or "",
        )
        if settings.mqtt_username:
            self.client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
        if settings.use_tls:
            self.client.tls_set(
                ca_certs    = settings.mqtt_ca_cert,
                certfile    = settings.mqtt_client_cert,
                keyfile     = settings.mqtt_client_key
            )

        self.client.on_connect      = self.on_connect
        self.client.on_disconnect   = self.on_disconnect
        self.client.on_message      = self.on_message

    def on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(f"Failed to connect, reason code {reason_code}")
            return
        self.connected = True
        logger.info("Connected to MQTT Broker!")
        topics = {self.settings.mqtt_subscribe_topic}
        topics.update(f"{t}/#" for t in self.device_topics())
        topics.update(self.subscriptions)
        for topic in sorted(topics):
            self.client.subscribe(topic)                                                # Resubscribe after every (re)connect
            logger.info(f"Subscribed to topic: {topic}")
        self.subscriptions = topics

    def on_disconnect(self, client, userdata, flags, reason_code, properties):
        self.connected = False
        if reason_code.is_failure:
            logger.warning(f"Unexpected disconnection from broker: {reason_code}")
        else:
            logger.info("Disconnected from MQTT broker")

    def on_message(self, client, userdata, msg):
        # Synchronous handler for Paho MQTT, called from a background thread
        # Use call_soon_threadsafe to hand the message to the main event loop
        if self.loop is not None and self.loop.is_running():
            self.loop.call_soon_threadsafe(self.handle_message, msg.topic, msg.payload)
        else:
            self.handle_message(msg.topic, msg.payload)

    def handle_message(self, topic: str, payload: bytes):
        logger.debug(f"Received message on topic {topic}: {payload!r}")
        try:
            self.on_telemetry(topic, payload)
        except Exception as e:
            logger.error(f"Error handling message on {topic}: {e}")

    def publish(self, topic: str, payload: str) -> bool:
        """Fire-and-forget QoS 0 publish; True once the client has accepted it."""
        try:
            result = self.client.publish(topic, payload, qos=0)
        except (ValueError, RuntimeError) as e:
            logger.error(f"Failed to publish to {topic}: {e}")
            return False
        if result.rc == mqtt_client.MQTT_ERR_SUCCESS:
            logger.info(f"Published {payload!r} on topic {topic}")
            return True
        logger.error(f"Failed to publish to {topic}: rc={result.rc}")
        return False

    def subscribe_device(self, mqtt_topic: str):
        topic = f"{mqtt_topic}/#"
        self.subscriptions.add(topic)
        if self.connected:
            self.client.subscribe(topic)
            logger.info(f"Subscribed to topic: {topic}")

    def unsubscribe_device(self, mqtt_topic: str):
        topic = f"{mqtt_topic}/#"
        self.subscriptions.discard(topic)
        if self.connected:
            self.client.unsubscribe(topic)
            logger.info(f"Unsubscribed from topic: {topic}")

    def start(self):
        try:
            self.loop = asyncio.get_running_loop()
        except RuntimeError:
            self.loop = None
        logger.info(f"Connecting to MQTT broker at {self.settings.mqtt_broker}:{self.settings.mqtt_port}")
        self.client.connect_async(self.settings.mqtt_broker, self.settings.mqtt_port, self.settings.mqtt_keepalive)
        # Run the MQTT network loop in the background.
        self.client.loop_start()
        logger.info("MQTT client started successfully")

    def stop(self):
        self.client.loop_stop()
        self.client.disconnect()
        self.connected = False
        logger.info("MQTT client stopped")
