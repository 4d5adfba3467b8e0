from datetime import timedelta

import pytest

from conftest import at
from datamodel import NotificationPreferences, NotificationStatus, ScheduleConfig
from events import E, bus
from metrics import runtime_metrics
from storage.base import StoreError
import world.reminder as reminder_module
from world.reminder import ReminderTrigger, default_message


async def pending_count(store) -> int:
    return (await store.count_notifications_by_status())["PENDING"]


async def test_medication_daily_reminder_creates_pending_notification(store):
    reminder = await store.create_reminder(
        "u1", "MEDICATION", "Blood pressure pill", ScheduleConfig(type="daily", time="09:00")
    )
    trigger = ReminderTrigger(store)

    report = await trigger.run_tick(at(9, 0))

    assert report.triggered == [reminder.reminder_id]
    [notification] = report.notifications
    stored = await store.get_notification(notification.notification_id)
    assert stored.status == NotificationStatus.PENDING
    assert stored.type == "REMINDER"
    assert stored.title == "Blood pressure pill"
    assert stored.body == "Don't forget to take your medication."
    assert stored.payload == {"reminder_id": reminder.reminder_id, "reminder_type": "MEDICATION"}

    reloaded = await store.get_reminder(reminder.reminder_id)
    assert reloaded.last_triggered == at(9, 0)


async def test_explicit_message_overrides_default(store):
    await store.create_reminder(
        "u1", "HYDRATION", "Water", ScheduleConfig(type="interval", interval_minutes=60), message="Glass #3"
    )
    report = await ReminderTrigger(store).run_tick(at(11, 0))
    assert report.notifications[0].body == "Glass #3"


def test_default_message_falls_back_to_custom():
    assert default_message("workout") == "Time for your workout! Stay active and healthy."
    assert default_message("UNKNOWN") == "You have a reminder."


async def test_second_run_in_same_minute_does_not_duplicate(store):
    await store.create_reminder("u1", "SLEEP", "Wind down", ScheduleConfig(type="daily", time="22:00"))
    await store.create_reminder("u1", "WORKOUT", "Run", ScheduleConfig(type="weekly", time="22:00", days=[1]))
    trigger = ReminderTrigger(store)

    first = await trigger.run_tick(at(22, 0))
    second = await trigger.run_tick(at(22, 0, second=30))

    assert len(first.triggered) == 2
    assert second.triggered == []
    assert await pending_count(store) == 2


async def test_interval_reminder_fires_again_after_interval(store):
    await store.create_reminder("u1", "MOVEMENT", "Stretch", ScheduleConfig(type="interval", interval_minutes=30))
    trigger = ReminderTrigger(store)

    start = at(10, 0)
    fired = 0
    for minute in range(0, 61):
        report = await trigger.run_tick(start + timedelta(minutes=minute))
        fired += len(report.triggered)

    # 10:00, 10:30, 11:00
    assert fired == 3


async def test_gated_reminder_is_suppressed_but_advanced(store):
    reminder = await store.create_reminder("u1", "HYDRATION", "Water", ScheduleConfig(type="daily", time="08:00"))
    await store.save_preferences("u1", NotificationPreferences(reminders=False))

    report = await ReminderTrigger(store).run_tick(at(8, 0))

    assert report.suppressed == [reminder.reminder_id]
    assert report.triggered == []
    assert await pending_count(store) == 0
    assert (await store.get_reminder(reminder.reminder_id)).last_triggered == at(8, 0)
    assert runtime_metrics.reminders_suppressed == 1


async def test_quiet_hours_suppress_without_advancing(store):
    reminder = await store.create_reminder(
        "u1", "HYDRATION", "Water", ScheduleConfig(type="interval", interval_minutes=30),
        quiet_hours_start="22:00", quiet_hours_end="06:00",
    )

    report = await ReminderTrigger(store).run_tick(at(23, 0))

    assert report.due == 0
    assert (await store.get_reminder(reminder.reminder_id)).last_triggered is None


async def test_malformed_schedule_is_skipped_and_others_still_fire(store, log_records):
    broken = await store.create_reminder("u1", "CUSTOM", "Broken", ScheduleConfig(type="daily"))
    ok = await store.create_reminder("u2", "HYDRATION", "Water", ScheduleConfig(type="daily", time="07:30"))

    report = await ReminderTrigger(store).run_tick(at(7, 30))

    assert report.skipped == [broken.reminder_id]
    assert report.triggered == [ok.reminder_id]
    # 非法规则不会被自动停用
    assert (await store.get_reminder(broken.reminder_id)).is_active
    assert any(r["level"].name == "WARNING" and broken.reminder_id in r["message"] for r in log_records)


async def test_out_of_range_interval_is_skipped_and_others_still_fire(store, log_records):
    huge = await store.create_reminder("u1", "MOVEMENT", "Stretch", ScheduleConfig(type="interval", interval_minutes=10**16))
    await store.update_reminder_last_triggered(huge.reminder_id, at(7, 0))
    ok = await store.create_reminder("u2", "HYDRATION", "Water", ScheduleConfig(type="daily", time="08:00"))

    report = await ReminderTrigger(store).run_tick(at(8, 0))

    assert report.skipped == [huge.reminder_id]
    assert report.triggered == [ok.reminder_id]
    assert any(r["level"].name == "WARNING" and huge.reminder_id in r["message"] for r in log_records)


async def test_unexpected_evaluation_error_is_skipped(store, monkeypatch, log_records):
    odd = await store.create_reminder("u1", "HYDRATION", "Water", ScheduleConfig(type="daily", time="08:00"))
    ok = await store.create_reminder("u2", "HYDRATION", "Water", ScheduleConfig(type="daily", time="08:00"))

    original = reminder_module.is_due

    def exploding_is_due(reminder, now):
        if reminder.reminder_id == odd.reminder_id:
            raise OverflowError("date value out of range")
        return original(reminder, now)

    monkeypatch.setattr(reminder_module, "is_due", exploding_is_due)

    report = await ReminderTrigger(store).run_tick(at(8, 0))

    assert report.skipped == [odd.reminder_id]
    assert report.triggered == [ok.reminder_id]
    assert (await store.get_reminder(odd.reminder_id)).last_triggered is None
    assert any(r["level"].name == "ERROR" and odd.reminder_id in r["message"] for r in log_records)


async def test_create_failure_is_isolated_and_not_advanced(store, monkeypatch, log_records):
    bad = await store.create_reminder("bad-user", "HYDRATION", "Water", ScheduleConfig(type="daily", time="08:00"))
    good = await store.create_reminder("u1", "HYDRATION", "Water", ScheduleConfig(type="daily", time="08:00"))

    original = store.create_notification

    async def flaky_create(user_id, type, title, body, payload=None):
        if user_id == "bad-user":
            raise StoreError("database is locked")
        return await original(user_id, type, title, body, payload)

    monkeypatch.setattr(store, "create_notification", flaky_create)

    report = await ReminderTrigger(store).run_tick(at(8, 0))

    assert report.failed == [bad.reminder_id]
    assert report.triggered == [good.reminder_id]
    assert (await store.get_reminder(bad.reminder_id)).last_triggered is None
    assert (await store.get_reminder(good.reminder_id)).last_triggered == at(8, 0)
    assert any(r["level"].name == "ERROR" and bad.reminder_id in r["message"] for r in log_records)


async def test_advance_failure_after_create_is_logged(store, monkeypatch, log_records):
    reminder = await store.create_reminder("u1", "HYDRATION", "Water", ScheduleConfig(type="daily", time="08:00"))

    async def broken_update(reminder_id, timestamp):
        raise StoreError("disk I/O error")

    monkeypatch.setattr(store, "update_reminder_last_triggered", broken_update)

    report = await ReminderTrigger(store).run_tick(at(8, 0))

    assert report.triggered == [reminder.reminder_id]
    assert await pending_count(store) == 1
    errors = [r for r in log_records if r["level"].name == "ERROR"]
    assert any(report.notifications[0].notification_id in r["message"] for r in errors)


async def test_list_failure_propagates_to_tick_boundary(store, monkeypatch):
    async def broken_list():
        raise StoreError("connection lost")

    monkeypatch.setattr(store, "list_active_reminders", broken_list)

    # 整轮失败交给 Ticker 兜底
    with pytest.raises(StoreError):
        await ReminderTrigger(store).run_tick(at(8, 0))


async def test_notification_created_event_is_emitted(store):
    received = []

    def on_created(notification=None):
        received.append(notification)

    bus.on(E.NOTIFICATION_CREATED)(on_created)
    try:
        await store.create_reminder("u1", "HYDRATION", "Water", ScheduleConfig(type="daily", time="08:00"))
        report = await ReminderTrigger(store).run_tick(at(8, 0))
    finally:
        bus.remove_listener(E.NOTIFICATION_CREATED, on_created)

    assert [n.notification_id for n in received] == [report.notifications[0].notification_id]


async def test_clock_is_used_when_now_not_given(store):
    await store.create_reminder("u1", "HYDRATION", "Water", ScheduleConfig(type="daily", time="08:00"))
    trigger = ReminderTrigger(store, clock=lambda: at(8, 0))

    report = await trigger.run_tick()

    assert report.now == at(8, 0)
    assert len(report.triggered) == 1
