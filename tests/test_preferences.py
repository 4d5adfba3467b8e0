from datamodel import NotificationPreferences, NotificationType
from world.preferences import PreferenceGate


async def test_defaults_when_user_has_no_preferences(store):
    gate = PreferenceGate(store)
    for category in NotificationType:
        assert await gate.is_enabled("nobody", category)


async def test_disabled_category_is_gated(store):
    await store.save_preferences("u1", NotificationPreferences(reminders=False))
    gate = PreferenceGate(store)

    assert not await gate.is_enabled("u1", NotificationType.REMINDER)
    assert not await gate.is_enabled("u1", "reminder")
    assert await gate.is_enabled("u1", NotificationType.INSIGHT)
    # 其他用户不受影响
    assert await gate.is_enabled("u2", NotificationType.REMINDER)


async def test_unknown_category_fails_open(store):
    await store.save_preferences(
        "u1",
        NotificationPreferences(
            reminders=False, insights=False, achievements=False,
            bookings=False, messages=False, system=False,
        ),
    )
    gate = PreferenceGate(store)
    assert await gate.is_enabled("u1", "FALL_DETECTED")
