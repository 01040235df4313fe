import json
from unittest.mock import MagicMock

from accrual_engine import config
from accrual_engine.services.realtime import (
    NotificationChannel,
    RedisNotificationChannel,
    create_notifier,
    user_topic,
)


def test_user_updates_only_reach_that_user():
    channel = NotificationChannel()
    mine = channel.subscribe(user_topic(1))
    theirs = channel.subscribe(user_topic(2))

    assert channel.send_user_update(1, {"type": "BENEFIT_PROCESSED"}) == 1
    assert mine.get_nowait() == {"type": "BENEFIT_PROCESSED"}
    assert theirs.empty()


def test_admin_updates_fan_out():
    channel = NotificationChannel()
    a, b = channel.subscribe("admin"), channel.subscribe("admin")
    assert channel.send_admin_update({"type": "WITHDRAWAL_REQUESTED"}) == 2
    assert a.get_nowait()["type"] == b.get_nowait()["type"] == "WITHDRAWAL_REQUESTED"


def test_unsubscribe_and_full_queue():
    channel = NotificationChannel(max_queue_size=1)
    q = channel.subscribe("admin")
    assert channel.send_admin_update({"n": 1}) == 1
    # Full queue drops instead of blocking the dispatcher
    assert channel.send_admin_update({"n": 2}) == 0

    channel.unsubscribe("admin", q)
    assert channel.send_admin_update({"n": 3}) == 0


def test_redis_channel_publishes_json():
    client = MagicMock()
    client.publish.return_value = 3
    channel = RedisNotificationChannel(client=client)

    assert channel.send_user_update(9, {"type": "COMMISSION_UNLOCKED", "amount": "100.00000000"}) == 3
    name, body = client.publish.call_args.args
    assert name == "realtime:user:9"
    assert json.loads(body)["amount"] == "100.00000000"

    channel.send_admin_update({"type": "PURCHASE_CONFIRMED"})
    assert client.publish.call_args.args[0] == "realtime:admin"


def test_create_notifier_defaults_to_memory(monkeypatch):
    monkeypatch.setitem(config.NOTIFICATION_SETTINGS, "backend", "memory")
    assert isinstance(create_notifier(), NotificationChannel)
