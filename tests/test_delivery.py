from conftest import RecordingSender, at
from datamodel import NotificationStatus
from metrics import runtime_metrics
from storage.base import StoreError
from world.delivery import NotificationDelivery


async def status_of(store, notification_id) -> NotificationStatus:
    return (await store.get_notification(notification_id)).status


async def test_no_devices_goes_straight_to_delivered(store):
    n = await store.create_notification("u1", "REMINDER", "Water", "Drink")
    await store.register_device("u1", None, "web")
    sender = RecordingSender()

    report = await NotificationDelivery(store, sender).run_tick(at(9, 0))

    assert report.delivered == [n.notification_id]
    assert sender.calls == []
    stored = await store.get_notification(n.notification_id)
    assert stored.status == NotificationStatus.DELIVERED
    assert stored.sent_at == at(9, 0)


async def test_push_capable_notification_is_sent_to_every_device(store):
    n = await store.create_notification("u1", "REMINDER", "Water", "Drink", {"reminder_id": "r1"})
    await store.register_device("u1", "tok-a")
    await store.register_device("u1", "tok-b")
    sender = RecordingSender()

    report = await NotificationDelivery(store, sender).run_tick(at(9, 0))

    assert report.sent == [n.notification_id]
    assert report.push_ok == 2
    assert sorted(token for token, _ in sender.calls) == ["tok-a", "tok-b"]
    _, message = sender.calls[0]
    assert (message.title, message.body, message.payload) == ("Water", "Drink", {"reminder_id": "r1"})
    assert await status_of(store, n.notification_id) == NotificationStatus.SENT


async def test_one_failed_device_does_not_revert_sent(store, log_records):
    n = await store.create_notification("u1", "REMINDER", "Water", "Drink")
    await store.register_device("u1", "tok-good")
    await store.register_device("u1", "tok-bad")
    sender = RecordingSender(failing={"tok-bad"})

    report = await NotificationDelivery(store, sender).run_tick(at(9, 0))

    assert report.sent == [n.notification_id]
    assert (report.push_ok, report.push_failed) == (1, 1)
    assert len(sender.calls) == 2
    assert await status_of(store, n.notification_id) == NotificationStatus.SENT
    failures = [r for r in log_records if r["level"].name == "WARNING" and "推送发送失败" in r["message"]]
    assert len(failures) == 1
    assert "DeviceNotRegistered" in failures[0]["message"]


async def test_raising_and_slow_senders_are_contained(store):
    n = await store.create_notification("u1", "REMINDER", "Water", "Drink")
    for token in ("tok-raise", "tok-slow", "tok-ok"):
        await store.register_device("u1", token)
    sender = RecordingSender(raising={"tok-raise"}, slow={"tok-slow"}, delay=5.0)

    delivery = NotificationDelivery(store, sender, send_timeout=0.05)
    report = await delivery.run_tick(at(9, 0))

    assert report.sent == [n.notification_id]
    assert (report.push_ok, report.push_failed) == (1, 2)
    assert runtime_metrics.push_send_failed == 2
    assert await status_of(store, n.notification_id) == NotificationStatus.SENT


async def test_failing_status_update_is_isolated_within_batch(store, monkeypatch):
    first = await store.create_notification("u1", "REMINDER", "1", "b")
    second = await store.create_notification("u2", "REMINDER", "2", "b")
    third = await store.create_notification("u3", "REMINDER", "3", "b")
    await store.register_device("u3", "tok-3")

    original = store.update_notification_status

    async def flaky(notification_id, status, sent_at=None):
        if notification_id == second.notification_id and status != NotificationStatus.FAILED:
            raise StoreError("disk I/O error")
        return await original(notification_id, status, sent_at=sent_at)

    monkeypatch.setattr(store, "update_notification_status", flaky)
    sender = RecordingSender()

    report = await NotificationDelivery(store, sender).run_tick(at(9, 0))

    assert await status_of(store, first.notification_id) == NotificationStatus.DELIVERED
    assert await status_of(store, second.notification_id) == NotificationStatus.FAILED
    assert await status_of(store, third.notification_id) == NotificationStatus.SENT
    assert report.failed == [second.notification_id]
    assert [token for token, _ in sender.calls] == ["tok-3"]


async def test_notification_stays_pending_when_failed_write_also_fails(store, monkeypatch, log_records):
    n = await store.create_notification("u1", "REMINDER", "Water", "Drink")
    await store.register_device("u1", "tok")

    async def always_fails(notification_id, status, sent_at=None):
        raise StoreError("database is locked")

    monkeypatch.setattr(store, "update_notification_status", always_fails)
    sender = RecordingSender()

    report = await NotificationDelivery(store, sender).run_tick(at(9, 0))

    assert report.left_pending == [n.notification_id]
    assert sender.calls == []
    assert await status_of(store, n.notification_id) == NotificationStatus.PENDING
    assert runtime_metrics.notifications_left_pending == 1
    assert sum(1 for r in log_records if r["level"].name == "ERROR") == 2


async def test_batch_size_bounds_each_tick(store):
    ids = [(await store.create_notification("u1", "SYSTEM", f"t{i}", "b")).notification_id for i in range(5)]
    delivery = NotificationDelivery(store, RecordingSender(), batch_size=2)

    first = await delivery.run_tick(at(9, 0))
    second = await delivery.run_tick(at(9, 0, second=10))
    third = await delivery.run_tick(at(9, 0, second=20))
    fourth = await delivery.run_tick(at(9, 0, second=30))

    assert (first.fetched, second.fetched, third.fetched, fourth.fetched) == (2, 2, 1, 0)
    delivered = first.delivered + second.delivered + third.delivered
    assert sorted(delivered) == sorted(ids)
    # 先进先出: 第一轮取走最早的两条
    assert set(first.delivered) == set(ids[:2])


async def test_terminal_notifications_are_never_requeued(store):
    await store.create_notification("u1", "REMINDER", "Water", "Drink")
    await store.register_device("u1", "tok")
    sender = RecordingSender(failing={"tok"})
    delivery = NotificationDelivery(store, sender)

    await delivery.run_tick(at(9, 0))
    again = await delivery.run_tick(at(9, 0, second=10))

    assert again.fetched == 0
    assert len(sender.calls) == 1


async def test_already_terminal_notification_is_skipped(store, monkeypatch):
    n = await store.create_notification("u1", "REMINDER", "Water", "Drink")
    await store.register_device("u1", "tok")
    stale_batch = await store.list_pending_notifications(limit=10)
    await store.update_notification_status(n.notification_id, NotificationStatus.DELIVERED, sent_at=at(8, 59))

    async def stale_list(limit):
        return stale_batch

    monkeypatch.setattr(store, "list_pending_notifications", stale_list)
    sender = RecordingSender()

    report = await NotificationDelivery(store, sender).run_tick(at(9, 0))

    assert report.skipped == [n.notification_id]
    assert sender.calls == []
    assert await status_of(store, n.notification_id) == NotificationStatus.DELIVERED
