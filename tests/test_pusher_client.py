from utils import pusher_client


class RecordingPusher:
    def __init__(self, fail=False):
        self.fail = fail
        self.triggered = []

    def trigger(self, channel, event, data):
        if self.fail:
            raise RuntimeError("pusher 503")
        self.triggered.append((channel, event, data))


def test_disabled_pusher_publishes_nothing(monkeypatch):
    monkeypatch.setattr(pusher_client, "PUSHER_ENABLED", False)
    assert pusher_client.get_pusher_client() is None
    assert pusher_client.publish_chat_message_sync("ch", "new-message", {}) is False


def test_missing_credentials(monkeypatch):
    monkeypatch.setattr(pusher_client, "PUSHER_ENABLED", True)
    monkeypatch.setattr(pusher_client, "_pusher_client", None)
    monkeypatch.setattr(pusher_client, "PUSHER_KEY", "")
    assert pusher_client.get_pusher_client() is None


def test_publish_and_failure(monkeypatch):
    client = RecordingPusher()
    monkeypatch.setattr(pusher_client, "get_pusher_client", lambda: client)
    channel = pusher_client.conversation_pusher_channel("c1")

    assert pusher_client.publish_chat_message_sync(channel, pusher_client.NEW_MESSAGE_EVENT, {"id": 1})
    assert client.triggered == [("private-conversation-c1", "new-message", {"id": 1})]

    client.fail = True
    assert pusher_client.publish_chat_message_sync(channel, "new-message", {"id": 2}) is False
