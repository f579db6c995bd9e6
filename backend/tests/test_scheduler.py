import unittest
from types import SimpleNamespace

from curesync.core.alarms import PermissionStatus
from curesync.core.ledger import ScheduleLedger
from curesync.core.scheduler import ReminderScheduler, ScheduleState, SchedulingResult

from fakes import (
    DAILY_THRICE,
    DAILY_TWICE,
    WEEKLY_MWF,
    FakeAlarmService,
    add_medication,
    make_session_factory,
)


def edited(med, frequency):
    return SimpleNamespace(id=med.id, name=med.name, dosage=med.dosage, frequency=frequency)


class SchedulerTestCase(unittest.IsolatedAsyncioTestCase):
    foreign_keys = True

    def setUp(self):
        self.session_factory = make_session_factory(foreign_keys=self.foreign_keys)
        self.ledger = ScheduleLedger(self.session_factory)

    def make_scheduler(self, service):
        return ReminderScheduler(alarm_service=service, ledger=self.ledger)


class TestSchedule(SchedulerTestCase):
    async def test_daily_schedule_records_in_compiled_order(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)

        result = await scheduler.schedule(med)

        self.assertEqual(result, SchedulingResult(ok=True, count=2))
        self.assertEqual(await self.ledger.entries_for(med.id), ["alarm-1", "alarm-2"])
        self.assertEqual([(s.hour, s.minute) for s in service.register_calls], [(8, 0), (20, 0)])
        self.assertEqual(await scheduler.state_of(med.id), ScheduleState.SCHEDULED)

    async def test_alarm_content(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, name="Aspirin", dosage="100mg", frequency=WEEKLY_MWF)

        await scheduler.schedule(med)

        _, content = service.live["alarm-1"]
        self.assertEqual(content.medication_id, med.id)
        self.assertEqual(content.body, "Aspirin: 100mg")
        self.assertEqual(content.category, "medication")

    async def test_absent_rule_is_successful_noop(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        for frequency in (None, "", "{broken"):
            with self.subTest(frequency=frequency):
                med = add_medication(self.session_factory, frequency=frequency)
                result = await scheduler.schedule(med)

                self.assertTrue(result.ok)
                self.assertEqual(result.count, 0)
                self.assertEqual(await self.ledger.entries_for(med.id), [])
                self.assertEqual(await scheduler.state_of(med.id), ScheduleState.UNSCHEDULED)
        self.assertEqual(service.device_calls, 0)

    async def test_partial_registration_is_rolled_back(self):
        service = FakeAlarmService(fail_on=2)
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_THRICE)

        result = await scheduler.schedule(med)

        self.assertFalse(result.ok)
        self.assertEqual(result.error, "registration_failed")
        self.assertEqual(await self.ledger.entries_for(med.id), [])
        self.assertEqual(service.cancel_calls, ["alarm-1"])
        self.assertEqual(service.live, {})

    async def test_unexpected_error_becomes_registration_failure(self):
        class BrokenService(FakeAlarmService):
            async def register(self, spec, content):
                raise RuntimeError("device offline")

        scheduler = self.make_scheduler(BrokenService())
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)

        with self.assertLogs("curesync.core.scheduler", level="WARNING"):
            result = await scheduler.schedule(med)

        self.assertFalse(result.ok)
        self.assertEqual(result.error, "registration_failed")
        self.assertIn("device offline", result.detail)

    async def test_permission_denied_has_no_side_effects(self):
        service = FakeAlarmService(status=PermissionStatus.DENIED)
        scheduler = self.make_scheduler(service)
        for frequency in (DAILY_TWICE, WEEKLY_MWF):
            with self.subTest(frequency=frequency):
                med = add_medication(self.session_factory, frequency=frequency)
                result = await scheduler.schedule(med)

                self.assertFalse(result.ok)
                self.assertEqual(result.error, "permission_denied")
                self.assertEqual(await self.ledger.entries_for(med.id), [])
        self.assertEqual(service.device_calls, 0)

    async def test_denied_schedule_keeps_existing_alarms(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)
        await scheduler.schedule(med)
        before = await self.ledger.entries_for(med.id)
        calls = service.device_calls

        service.status = PermissionStatus.DENIED
        scheduler.gate.reset()
        result = await scheduler.schedule(med)

        self.assertEqual(result.error, "permission_denied")
        self.assertEqual(service.device_calls, calls)
        self.assertEqual(await self.ledger.entries_for(med.id), before)
        self.assertEqual(sorted(service.live), before)

    async def test_headless_host_schedules_nothing(self):
        service = FakeAlarmService(status=PermissionStatus.UNDETERMINED, capable=False)
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)

        result = await scheduler.schedule(med)

        self.assertTrue(result.ok)
        self.assertEqual(result.count, 0)
        self.assertEqual(service.device_calls, 0)
        self.assertEqual(service.permission_requests, 0)

    async def test_permission_asked_once_on_first_schedule(self):
        service = FakeAlarmService(status=PermissionStatus.UNDETERMINED, answer=PermissionStatus.GRANTED)
        scheduler = self.make_scheduler(service)

        for _ in range(2):
            med = add_medication(self.session_factory, frequency=DAILY_TWICE)
            self.assertTrue((await scheduler.schedule(med)).ok)
        self.assertEqual(service.permission_requests, 1)

    async def test_schedule_twice_does_not_stack(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)

        await scheduler.schedule(med)
        result = await scheduler.schedule(med)

        self.assertEqual(result.count, 2)
        self.assertEqual(await self.ledger.entries_for(med.id), ["alarm-3", "alarm-4"])
        self.assertEqual(sorted(service.live), ["alarm-3", "alarm-4"])


class TestReschedule(SchedulerTestCase):
    async def test_reschedule_replaces(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_THRICE)
        await scheduler.schedule(med)
        old_ids = await self.ledger.entries_for(med.id)

        result = await scheduler.reschedule(edited(med, DAILY_TWICE))

        self.assertEqual(result.count, 2)
        new_ids = await self.ledger.entries_for(med.id)
        self.assertEqual(len(new_ids), 2)
        self.assertFalse(set(new_ids) & set(old_ids))
        self.assertEqual(service.cancel_calls, old_ids)
        self.assertEqual(sorted(service.live), sorted(new_ids))

    async def test_reschedule_to_absent_rule_unschedules(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)
        await scheduler.schedule(med)

        result = await scheduler.reschedule(edited(med, None))

        self.assertTrue(result.ok)
        self.assertEqual(result.count, 0)
        self.assertEqual(await scheduler.state_of(med.id), ScheduleState.UNSCHEDULED)
        self.assertEqual(service.live, {})

    async def test_failed_reschedule_leaves_nothing_live(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_THRICE)
        await scheduler.schedule(med)

        # second registration of the new set fails
        service.fail_on = 5
        result = await scheduler.reschedule(edited(med, DAILY_TWICE))

        self.assertFalse(result.ok)
        self.assertEqual(result.error, "registration_failed")
        self.assertEqual(await self.ledger.entries_for(med.id), [])
        self.assertEqual(service.live, {})

    async def test_reschedule_after_permission_revoked(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)
        await scheduler.schedule(med)

        service.status = PermissionStatus.DENIED
        scheduler.gate.reset()
        result = await scheduler.reschedule(edited(med, DAILY_THRICE))

        self.assertEqual(result.error, "permission_denied")
        self.assertEqual(await self.ledger.entries_for(med.id), [])
        self.assertEqual(service.live, {})

    async def test_unchanged_rule_is_noop(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)
        await scheduler.on_medication_created(med)
        calls = service.device_calls

        # same rule, different key order and spelling
        result = await scheduler.on_medication_updated(
            med, edited(med, '{"times":["08:00","20:00"],"type":"daily"}')
        )

        self.assertTrue(result.ok)
        self.assertEqual(result.count, 2)
        self.assertEqual(result.detail, "recurrence unchanged")
        self.assertEqual(service.device_calls, calls)

    async def test_changed_rule_reschedules(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)
        await scheduler.on_medication_created(med)

        result = await scheduler.on_medication_updated(med, edited(med, WEEKLY_MWF))

        self.assertEqual(result.count, 3)
        self.assertEqual(len(await self.ledger.entries_for(med.id)), 3)


class TestCancel(SchedulerTestCase):
    async def test_cancel_is_idempotent(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)
        await scheduler.schedule(med)

        first = await scheduler.cancel(med.id)
        second = await scheduler.cancel(med.id)

        self.assertEqual(first, SchedulingResult(ok=True, count=2))
        self.assertEqual(second, SchedulingResult(ok=True, count=0))
        self.assertEqual(await self.ledger.entries_for(med.id), [])
        self.assertEqual(await scheduler.state_of(med.id), ScheduleState.UNSCHEDULED)

    async def test_delete_cancels_everything_even_when_device_refuses(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_THRICE)
        await scheduler.schedule(med)
        service.fail_cancel = True

        result = await scheduler.on_medication_deleted(med.id)

        self.assertTrue(result.ok)
        self.assertEqual(result.count, 3)
        self.assertEqual(result.detail, "3 cancellation(s) failed")
        self.assertEqual(service.cancel_calls, ["alarm-1", "alarm-2", "alarm-3"])
        self.assertEqual(await self.ledger.entries_for(med.id), [])

    async def test_cancel_works_without_permission(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)
        await scheduler.schedule(med)

        service.status = PermissionStatus.DENIED
        scheduler.gate.reset()
        result = await scheduler.cancel(med.id)

        self.assertTrue(result.ok)
        self.assertEqual(service.live, {})

    async def test_result_serializes(self):
        self.assertEqual(
            SchedulingResult.success(2).to_dict(),
            {"ok": True, "count": 2, "error": None, "detail": None},
        )


class TestReconcile(SchedulerTestCase):
    foreign_keys = False

    async def test_drops_orphans_and_fills_gaps(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        await self.ledger.record_triggers(4242, ["ghost-1", "ghost-2"])
        unscheduled = add_medication(self.session_factory, frequency=DAILY_TWICE)

        with self.assertLogs("curesync.core.scheduler", level="WARNING") as logs:
            report = await scheduler.reconcile([unscheduled])

        self.assertIn("ledger_inconsistent", logs.output[0])
        self.assertEqual(report.orphans_dropped, 2)
        self.assertEqual(report.rescheduled, [unscheduled.id])
        self.assertEqual(report.failed, [])
        self.assertEqual(service.cancel_calls, ["ghost-1", "ghost-2"])
        self.assertEqual(await self.ledger.find_orphans(), [])
        self.assertEqual(len(await self.ledger.entries_for(unscheduled.id)), 2)

    async def test_consistent_medications_are_left_alone(self):
        service = FakeAlarmService()
        scheduler = self.make_scheduler(service)
        med = add_medication(self.session_factory, frequency=WEEKLY_MWF)
        no_rule = add_medication(self.session_factory, frequency=None)
        await scheduler.schedule(med)
        calls = service.device_calls

        report = await scheduler.reconcile([med, no_rule])

        self.assertEqual(report.rescheduled, [])
        self.assertEqual(report.orphans_dropped, 0)
        self.assertEqual(service.device_calls, calls)

    async def test_without_permission_only_orphans_are_dropped(self):
        service = FakeAlarmService(status=PermissionStatus.DENIED)
        scheduler = self.make_scheduler(service)
        await self.ledger.record_triggers(4242, ["ghost-1"])
        med = add_medication(self.session_factory, frequency=DAILY_TWICE)

        with self.assertLogs("curesync.core.scheduler", level="WARNING"):
            report = await scheduler.reconcile([med])

        self.assertEqual(report.orphans_dropped, 1)
        self.assertEqual(report.rescheduled, [])
        self.assertEqual(service.register_calls, [])


if __name__ == "__main__":
    unittest.main()
