from datetime import datetime, timezone

T0 = datetime(2025, 5, 19, 10, 0, tzinfo=timezone.utc)


class FakeTransport:
    """Records publishes instead of talking to a broker."""

    def __init__(self, accept=True):
        self.accept = accept
        self.published = []
        self.subscribed = []
        self.unsubscribed = []

    def publish(self, topic, payload):
        if not self.accept:
            return False
        self.published.append((topic, payload))
        return True

    def subscribe_device(self, mqtt_topic):
        self.subscribed.append(mqtt_topic)

    def unsubscribe_device(self, mqtt_topic):
        self.unsubscribed.append(mqtt_topic)
