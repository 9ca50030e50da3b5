import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest import mock

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from machine_stock.services import history_service, machine_service
from machine_stock.services.destination_service import create_destination, find_or_create_destination
from machine_stock.services.errors import (
    DestinationNotFoundError,
    DuplicateIdentifierError,
    InvalidRetentionError,
    InvalidStateError,
    NotFoundError,
    OriginUndeterminableError,
)
from machine_stock.services.status_labels import (
    DELIVERED_LABEL,
    REPAIR_LABEL,
    STOCK_LABEL,
    MachineStatus,
    location_label,
)
from machine_stock.tests.support import make_session_factory

GREFFE = "TPI Safi – Greffe"


class LifecycleEngineTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()

    def tearDown(self):
        self.db.close()

    def _create(self, serial="S1", inventory="I1", reference="HP-400"):
        return machine_service.create_machine(
            self.db,
            machine_type="Printer",
            reference=reference,
            serial_number=serial,
            inventory_number=inventory,
        )

    def _history(self, machine):
        return history_service.list_history(self.db, machine.MachineID)

    def test_create_starts_in_stock_without_history(self):
        machine = self._create()
        self.assertEqual(machine.Status, MachineStatus.STOCKED.value)
        self.assertIsNone(machine.DestinationID)
        self.assertEqual(self._history(machine), [])
        self.assertEqual(location_label(machine), STOCK_LABEL)

    def test_assign_to_new_destination_records_move_from_stock(self):
        machine = self._create()
        destination = find_or_create_destination(self.db, GREFFE)
        machine_service.assign_machine(self.db, machine.MachineID, destination.DestinationID)

        history = self._history(machine)
        self.assertEqual(len(history), 1)
        self.assertEqual((history[0].FromLabel, history[0].ToLabel), ("Stock", GREFFE))
        self.assertEqual(machine.Status, MachineStatus.ASSIGNED.value)
        self.assertEqual(machine.DestinationID, destination.DestinationID)

    def test_repair_then_finish_returns_machine_to_origin(self):
        machine = self._create()
        destination = create_destination(self.db, GREFFE)
        machine_service.assign_machine(self.db, machine.MachineID, destination.DestinationID)

        machine_service.enter_repair(self.db, machine.MachineID)
        history = self._history(machine)
        self.assertEqual((history[-1].FromLabel, history[-1].ToLabel), (GREFFE, REPAIR_LABEL))
        self.assertIsNone(machine.DestinationID)
        self.assertEqual(machine.Status, MachineStatus.REPAIRING.value)

        machine_service.finish_repair(self.db, machine.MachineID)
        history = self._history(machine)
        self.assertEqual(len(history), 3)
        self.assertEqual((history[-1].FromLabel, history[-1].ToLabel), (REPAIR_LABEL, GREFFE))
        self.assertEqual(history[-1].Kind, "repair_end")
        self.assertEqual(machine.DestinationID, destination.DestinationID)
        self.assertEqual(machine.Status, MachineStatus.ASSIGNED.value)

    def test_every_transition_appends_one_entry_matching_current_location(self):
        machine = self._create()
        court_a = create_destination(self.db, "Court A – Parquet")
        court_b = create_destination(self.db, "Court B – Présidence")
        steps = [
            lambda: machine_service.assign_machine(self.db, machine.MachineID, court_a.DestinationID),
            lambda: machine_service.assign_machine(self.db, machine.MachineID, court_b.DestinationID),
            lambda: machine_service.enter_repair(self.db, machine.MachineID),
            lambda: machine_service.finish_repair(self.db, machine.MachineID),
            lambda: machine_service.deliver_machine(self.db, machine.MachineID),
        ]
        for expected_count, step in enumerate(steps, start=1):
            step()
            history = self._history(machine)
            self.assertEqual(len(history), expected_count)
            self.assertEqual(history[-1].ToLabel, location_label(machine))
        self.assertEqual(history[3].ToLabel, "Court B – Présidence")
        self.assertEqual(history[-1].FromLabel, "Court B – Présidence")
        self.assertEqual(history[-1].ToLabel, DELIVERED_LABEL)

    def test_finish_repair_without_origin_fails_without_writing(self):
        machine = self._create()
        machine_service.enter_repair(self.db, machine.MachineID)
        self.assertEqual(self._history(machine)[0].FromLabel, STOCK_LABEL)

        with self.assertRaises(OriginUndeterminableError):
            machine_service.finish_repair(self.db, machine.MachineID)
        self.assertEqual(len(self._history(machine)), 1)
        self.assertEqual(machine_service.get_machine(self.db, machine.MachineID).Status, MachineStatus.REPAIRING.value)

    def test_finish_repair_does_not_create_missing_destination(self):
        machine = self._create()
        history_service.append_entry(self.db, machine, "Stock", "Old Court – Greffe")
        history_service.append_entry(self.db, machine, "Old Court – Greffe", "Réparation")
        machine.Status = "en cours de réparation"
        self.db.commit()

        with self.assertRaises(DestinationNotFoundError):
            machine_service.finish_repair(self.db, machine.MachineID)
        self.assertEqual(len(self._history(machine)), 2)
        self.assertIsNone(machine_service.get_machine(self.db, machine.MachineID).DestinationID)

    def test_finish_repair_requires_machine_in_repair(self):
        machine = self._create()
        with self.assertRaises(InvalidStateError):
            machine_service.finish_repair(self.db, machine.MachineID)

    def test_deliver_from_stock_uses_assigned_fallback_label(self):
        machine = self._create()
        machine_service.deliver_machine(self.db, machine.MachineID)
        history = self._history(machine)
        self.assertEqual((history[0].FromLabel, history[0].ToLabel), ("Assigned", DELIVERED_LABEL))
        self.assertEqual(machine.Status, MachineStatus.DELIVERED.value)

    def test_redelivery_is_rejected(self):
        machine = self._create()
        machine_service.deliver_machine(self.db, machine.MachineID)
        with self.assertRaises(InvalidStateError):
            machine_service.deliver_machine(self.db, machine.MachineID)
        self.assertEqual(len(self._history(machine)), 1)

    def test_delivered_machine_cannot_be_reassigned(self):
        machine = self._create()
        destination = create_destination(self.db, GREFFE)
        machine_service.deliver_machine(self.db, machine.MachineID)
        with self.assertRaises(InvalidStateError):
            machine_service.assign_machine(self.db, machine.MachineID, destination.DestinationID)

    def test_unknown_machine_or_destination_is_not_found(self):
        machine = self._create()
        with self.assertRaises(NotFoundError):
            machine_service.enter_repair(self.db, 404)
        with self.assertRaises(NotFoundError):
            machine_service.assign_machine(self.db, machine.MachineID, 404)
        self.assertEqual(self._history(machine), [])

    def test_generic_update_with_repair_label_enters_repair(self):
        machine = self._create()
        destination = create_destination(self.db, GREFFE)
        machine_service.assign_machine(self.db, machine.MachineID, destination.DestinationID)

        machine_service.update_machine(
            self.db, machine.MachineID, {"reference": "HP-401", "status": "en cours de réparation"}
        )
        history = self._history(machine)
        self.assertEqual(machine.Reference, "HP-401")
        self.assertEqual(machine.Status, MachineStatus.REPAIRING.value)
        self.assertIsNone(machine.DestinationID)
        self.assertEqual((history[-1].ToLabel, history[-1].Kind), (REPAIR_LABEL, "repair_start"))

    def test_generic_update_cannot_assign(self):
        machine = self._create()
        with self.assertRaises(InvalidStateError):
            machine_service.update_machine(self.db, machine.MachineID, {"status": "affectée"})
        self.assertEqual(machine_service.get_machine(self.db, machine.MachineID).Status, MachineStatus.STOCKED.value)

    def test_identifiers_are_unique_ignoring_case_and_spaces(self):
        self._create(serial="S1", inventory="I1")
        with self.assertRaises(DuplicateIdentifierError):
            self._create(serial="  s1 ", inventory="I2")
        with self.assertRaises(DuplicateIdentifierError):
            self._create(serial="S2", inventory="i1")
        other = self._create(serial="S3", inventory="I3")
        with self.assertRaises(DuplicateIdentifierError):
            machine_service.update_machine(self.db, other.MachineID, {"serialNumber": "S1 "})
        machine_service.update_machine(self.db, other.MachineID, {"serialNumber": "s3"})
        self.assertEqual(other.SerialNumber, "s3")

    def test_retention_sweep_threshold_is_inclusive(self):
        now = datetime(2026, 3, 10, 12, 0, 0)
        cutoff = datetime(2021, 3, 10, 12, 0, 0)
        on_cutoff = self._create(serial="S1", inventory="I1", reference="on-cutoff")
        after_cutoff = self._create(serial="S2", inventory="I2", reference="after-cutoff")
        already_delivered = self._create(serial="S3", inventory="I3", reference="delivered")
        history_service.append_entry(self.db, on_cutoff, "Stock", GREFFE, changed_at=cutoff)
        history_service.append_entry(self.db, after_cutoff, "Stock", GREFFE, changed_at=cutoff + timedelta(microseconds=1))
        history_service.append_entry(self.db, already_delivered, "Stock", DELIVERED_LABEL, changed_at=cutoff - timedelta(days=30))
        already_delivered.Status = MachineStatus.DELIVERED.value
        self.db.commit()

        result = machine_service.sweep_retention(self.db, years=5, now=now)

        self.assertEqual(result["updatedCount"], 1)
        self.assertEqual(result["machineReferences"], ["on-cutoff"])
        self.assertEqual(result["cutoff"], cutoff)
        self.assertEqual(result["failed"], [])
        self.assertEqual(machine_service.get_machine(self.db, on_cutoff.MachineID).Status, MachineStatus.DELIVERED.value)
        self.assertEqual(machine_service.get_machine(self.db, after_cutoff.MachineID).Status, MachineStatus.STOCKED.value)
        delivered_entry = self._history(on_cutoff)[-1]
        self.assertEqual((delivered_entry.ToLabel, delivered_entry.ChangedAt), (DELIVERED_LABEL, now))
        self.assertEqual(len(self._history(already_delivered)), 1)

    def test_retention_sweep_continues_after_a_failure(self):
        now = datetime(2026, 3, 10, 12, 0, 0)
        first = self._create(serial="S1", inventory="I1", reference="first")
        second = self._create(serial="S2", inventory="I2", reference="second")
        for machine in (first, second):
            history_service.append_entry(self.db, machine, "Stock", GREFFE, changed_at=datetime(2019, 1, 1))
        self.db.commit()

        original = machine_service._apply_delivery

        def _fail_first(db, machine, when=None):
            if machine.MachineID == first.MachineID:
                raise RuntimeError("disk full")
            return original(db, machine, when)

        with mock.patch.object(machine_service, "_apply_delivery", side_effect=_fail_first):
            result = machine_service.sweep_retention(self.db, years=5, now=now)

        self.assertEqual(result["machineReferences"], ["second"])
        self.assertEqual([item["reference"] for item in result["failed"]], ["first"])
        self.assertEqual(machine_service.get_machine(self.db, first.MachineID).Status, MachineStatus.STOCKED.value)
        self.assertEqual(len(self._history(first)), 1)

    def test_years_before_handles_leap_day(self):
        self.assertEqual(machine_service.years_before(datetime(2024, 2, 29, 8), 5), datetime(2019, 2, 28, 8))

    def test_bulk_delete_removes_history_and_is_repeatable(self):
        first = self._create(serial="S1", inventory="I1")
        second = self._create(serial="S2", inventory="I2")
        destination = create_destination(self.db, GREFFE)
        machine_service.assign_machine(self.db, first.MachineID, destination.DestinationID)
        machine_service.enter_repair(self.db, second.MachineID)
        ids = [first.MachineID, second.MachineID]

        result = machine_service.bulk_delete_machines(self.db, ids)
        self.assertEqual(result["deletedCount"], 2)
        self.assertEqual(result["deletedIDs"], ids)
        self.assertEqual(history_service.list_history(self.db), [])
        with self.assertRaises(NotFoundError):
            machine_service.get_machine(self.db, first.MachineID)

        again = machine_service.bulk_delete_machines(self.db, ids)
        self.assertEqual(again["deletedCount"], 0)
        self.assertEqual(again["notFound"], ids)

    def test_deleting_history_entry_leaves_machine_status(self):
        machine = self._create()
        destination = create_destination(self.db, GREFFE)
        machine_service.assign_machine(self.db, machine.MachineID, destination.DestinationID)
        entry = self._history(machine)[0]

        history_service.delete_entry(self.db, entry.HistoryID)
        self.assertEqual(self._history(machine), [])
        self.assertEqual(machine_service.get_machine(self.db, machine.MachineID).Status, MachineStatus.ASSIGNED.value)
        with self.assertRaises(NotFoundError):
            history_service.delete_entry(self.db, entry.HistoryID)

    def test_list_repairs_reports_resolved_origin(self):
        machine = self._create()
        destination = create_destination(self.db, GREFFE)
        machine_service.assign_machine(self.db, machine.MachineID, destination.DestinationID)
        machine_service.enter_repair(self.db, machine.MachineID)

        repairs = machine_service.list_repairs(self.db)
        self.assertEqual([(item.MachineID, origin) for item, origin in repairs], [(machine.MachineID, GREFFE)])

    def test_finish_repair_can_resolve_current_episode(self):
        machine = self._create()
        court_a = create_destination(self.db, "Court A – Greffe")
        court_b = create_destination(self.db, "Court B – Greffe")
        machine_service.assign_machine(self.db, machine.MachineID, court_a.DestinationID)
        machine_service.enter_repair(self.db, machine.MachineID)
        machine_service.finish_repair(self.db, machine.MachineID)
        machine_service.assign_machine(self.db, machine.MachineID, court_b.DestinationID)
        machine_service.enter_repair(self.db, machine.MachineID)

        self.assertEqual(machine_service.list_repairs(self.db)[0][1], "Court A – Greffe")
        self.assertEqual(machine_service.list_repairs(self.db, "current")[0][1], "Court B – Greffe")

        machine_service.finish_repair(self.db, machine.MachineID, episode="current")
        history = self._history(machine)
        self.assertEqual(len(history), 6)
        self.assertEqual((history[-1].FromLabel, history[-1].ToLabel), (REPAIR_LABEL, "Court B – Greffe"))
        self.assertEqual(machine.DestinationID, court_b.DestinationID)

    def test_retention_period_beyond_calendar_is_rejected(self):
        with self.assertRaises(InvalidRetentionError):
            machine_service.years_before(datetime(2026, 3, 10), 5000)
        with self.assertRaises(InvalidRetentionError):
            machine_service.years_before(datetime(2026, 3, 10), -1)
        self.assertEqual(machine_service.years_before(datetime(2026, 3, 10), 2025), datetime(1, 3, 10))

        machine = self._create()
        with self.assertRaises(InvalidRetentionError):
            machine_service.sweep_retention(self.db, years=5000)
        self.assertEqual(machine_service.get_machine(self.db, machine.MachineID).Status, MachineStatus.STOCKED.value)

    def test_retention_sweep_skips_legacy_delivered_status(self):
        now = datetime(2026, 3, 10, 12, 0, 0)
        legacy = self._create(serial="S1", inventory="I1", reference="legacy-delivered")
        active = self._create(serial="S2", inventory="I2", reference="active")
        history_service.append_entry(self.db, legacy, "Tribunal de Safi – Parquet", "Machines délivrées", changed_at=datetime(2010, 1, 1))
        history_service.append_entry(self.db, active, "Stock", GREFFE, changed_at=datetime(2010, 1, 1))
        legacy.Status = "délivrée"
        self.db.commit()

        result = machine_service.sweep_retention(self.db, years=5, now=now)

        self.assertEqual(result["failed"], [])
        self.assertEqual(result["machineReferences"], ["active"])
        self.assertEqual(len(self._history(legacy)), 1)
        self.assertEqual(machine_service.get_machine(self.db, legacy.MachineID).Status, "délivrée")

    def test_listings_translate_legacy_statuses(self):
        repairing = self._create(serial="S1", inventory="I1", reference="legacy-repair")
        delivered = self._create(serial="S2", inventory="I2", reference="legacy-delivered")
        stocked = self._create(serial="S3", inventory="I3", reference="legacy-stock")
        history_service.append_entry(self.db, repairing, "Stock", "Court A – Greffe")
        history_service.append_entry(self.db, repairing, "Court A – Greffe", "Réparation")
        repairing.Status = "en cours de réparation"
        delivered.Status = "Délivrée"
        stocked.Status = "stocké"
        self.db.commit()

        repairs = machine_service.list_repairs(self.db)
        self.assertEqual([(item.MachineID, origin) for item, origin in repairs], [(repairing.MachineID, "Court A – Greffe")])
        self.assertEqual(
            [item.MachineID for item in machine_service.list_machines(self.db, status=MachineStatus.DELIVERED)],
            [delivered.MachineID],
        )
        self.assertEqual(
            [item.MachineID for item in machine_service.list_machines(self.db, status=MachineStatus.STOCKED)],
            [stocked.MachineID],
        )
        self.assertEqual(len(machine_service.list_machines(self.db)), 3)


if __name__ == "__main__":
    unittest.main()
