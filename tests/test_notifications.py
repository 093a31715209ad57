"""
Notification Tests
Background delivery keeps counters only; delivered events are not retained.
"""

from unittest.mock import patch

from services.notification_service import NotificationService


class TestNotificationDelivery:
    async def test_many_events_leave_no_per_event_state(self):
        """Delivered tasks are discarded and only the counters grow"""
        service = NotificationService(webhook_url="")

        for index in range(250):
            service.notify("payment.released", {"payment_id": f"PAY_{index}"})
        await service.drain()

        assert service.get_stats() == {"delivered": 250, "failed": 0, "pending": 0}
        assert not any(isinstance(value, (list, dict)) for value in vars(service).values())

    async def test_delivery_failure_is_counted_not_raised(self):
        service = NotificationService(webhook_url="http://hooks.invalid/escrow")

        with patch("services.notification_service.aiohttp.ClientSession", side_effect=OSError("unreachable")):
            service.notify("payment.failed", {"payment_id": "PAY_1"})
            await service.drain()

        assert service.get_stats() == {"delivered": 0, "failed": 1, "pending": 0}

    def test_notify_without_running_loop_is_dropped(self):
        service = NotificationService(webhook_url="")

        service.notify("payment.cancelled", {"payment_id": "PAY_1"})

        assert service.get_stats() == {"delivered": 0, "failed": 0, "pending": 0}
