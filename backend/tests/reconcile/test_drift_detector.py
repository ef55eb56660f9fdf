from datetime import date, datetime, timedelta, timezone

from clinic_recon.services.reconcile.discrepancy import (
    CancelLedgerRecord,
    CancelReservations,
    CompleteReservation,
    DiscrepancyKind,
    InsertReservation,
    ManualReview,
    RescheduleReservation,
    ResolveIdentity,
    SettleReorder,
)
from clinic_recon.services.reconcile.drift import DriftDetector
from clinic_recon.services.reconcile.types import (
    IntakeView,
    LedgerRecord,
    OrderView,
    PatientView,
    ReorderView,
    ReservationView,
    Snapshot,
)

DAY = date(2026, 2, 5)
T0 = datetime(2026, 1, 20, 9, 0, tzinfo=timezone.utc)


def _row(reservation_id, patient="1001", day=DAY, time="13:00", status="pending", created=T0):
    return ReservationView(
        reservation_id=reservation_id,
        patient_identity=patient,
        reserved_date=day,
        reserved_time=time,
        status=status,
        created_at=created,
        updated_at=created,
    )


def _ledger(reservation_id, patient="1001", day=DAY, time="13:00", status=""):
    return LedgerRecord.model_validate(
        {
            "reserveId": reservation_id,
            "patient_id": patient,
            "date": day.isoformat(),
            "time": time,
            "status": status,
        }
    )


def _snapshot(reservations=(), intakes=(), reorders=(), orders=(), patients=("1001", "1002", "1003")):
    return Snapshot(
        date_from=date(2026, 2, 1),
        date_to=date(2026, 2, 28),
        patients={identity: PatientView(identity=identity) for identity in patients},
        reservations=list(reservations),
        intakes=list(intakes),
        reorders=list(reorders),
        orders=list(orders),
    )


def test_canceled_ledger_record_makes_a_ghost():
    found = DriftDetector().detect(_snapshot([_row("R1")]), [_ledger("R1", status="キャンセル")])

    assert [item.kind for item in found] == [DiscrepancyKind.ghost]
    assert found[0].proposed_fix == CancelReservations(reservation_ids=("R1",))
    assert found[0].detail["ledger_status"] == "canceled"


def test_absent_ledger_record_makes_a_ghost_but_completed_needs_review():
    found = DriftDetector().detect(
        _snapshot([_row("R1"), _row("R2", patient="1002", time="14:00", status="completed")]), []
    )

    assert [item.entity_refs for item in found] == [("R1",), ("R2",)]
    assert isinstance(found[0].proposed_fix, CancelReservations)
    assert found[1].proposed_fix == ManualReview("completed_without_ledger_record")


def test_same_day_duplicates_keep_the_earliest_and_relink():
    early = _row("R-early", time="10:00", created=T0)
    late = _row("R-late", time="11:00", created=T0 + timedelta(minutes=3))
    ledger = [_ledger("R-early", time="10:00"), _ledger("R-late", time="11:00")]

    found = DriftDetector().detect(_snapshot([late, early]), ledger)

    assert len(found) == 1
    assert found[0].kind == DiscrepancyKind.duplicate
    assert found[0].proposed_fix == CancelReservations(
        reservation_ids=("R-late",),
        keep_reservation_id="R-early",
        relink_intake=True,
        ledger_cancel_ids=("R-late",),
    )


def test_slot_tie_break_is_deterministic():
    first = _row("R-b", patient="1001", created=T0)
    second = _row("R-a", patient="1002", created=T0 + timedelta(seconds=1))
    ledger = [_ledger("R-b", patient="1001"), _ledger("R-a", patient="1002")]

    for order in ([first, second], [second, first]):
        found = DriftDetector(capacity=1).detect(_snapshot(order), ledger)
        assert found[0].proposed_fix.reservation_ids == ("R-a",)
        assert found[0].detail["kept"] == ["R-b"]


def test_equal_created_at_prefers_the_ledger_match_then_id():
    matching = _row("R-2", patient="1001")
    stale = _row("R-1", patient="1002")
    # R-1 is on the ledger at another time, so it is not the ledger's current value.
    ledger = [_ledger("R-2", patient="1001"), _ledger("R-1", patient="1002", time="15:00")]

    found = DriftDetector(capacity=1).detect(_snapshot([stale, matching]), ledger)

    assert found[0].kind == DiscrepancyKind.duplicate
    assert found[0].proposed_fix.reservation_ids == ("R-1",)


def test_slot_capacity_allows_configured_bookings():
    rows = [_row(f"R{index}", patient=f"100{index}", created=T0 + timedelta(minutes=index)) for index in (1, 2, 3)]
    ledger = [_ledger(row.reservation_id, patient=row.patient_identity) for row in rows]

    assert DriftDetector(capacity=3).detect(_snapshot(rows), ledger) == []
    found = DriftDetector(capacity=2).detect(_snapshot(rows), ledger)
    assert found[0].proposed_fix.reservation_ids == ("R3",)


def test_same_day_row_missing_from_the_ledger_is_a_ghost_not_a_duplicate():
    early = _row("R-early", time="10:00", created=T0)
    late = _row("R-late", time="11:00", created=T0 + timedelta(minutes=3))

    found = DriftDetector().detect(_snapshot([early, late]), [_ledger("R-early", time="10:00")])

    assert [item.kind for item in found] == [DiscrepancyKind.ghost]
    assert found[0].proposed_fix == CancelReservations(reservation_ids=("R-late",))


def test_cancel_and_rebook_keeps_the_ledger_active_booking():
    old = _row("R-old", created=T0)
    new = _row("R-new", time="15:00", created=T0 + timedelta(days=1))
    ledger = [_ledger("R-old", status="キャンセル"), _ledger("R-new", time="15:00")]

    found = DriftDetector().detect(_snapshot([old, new]), ledger)

    assert [item.kind for item in found] == [DiscrepancyKind.ghost]
    assert found[0].proposed_fix == CancelReservations(reservation_ids=("R-old",))


def test_completed_row_off_the_ledger_never_outranks_an_active_booking():
    done = _row("R-done", time="10:00", status="completed", created=T0)
    booked = _row("R-booked", time="15:00", created=T0 + timedelta(days=1))

    found = DriftDetector().detect(_snapshot([done, booked]), [_ledger("R-booked", time="15:00")])

    assert [item.entity_refs for item in found] == [("R-done",)]
    assert found[0].proposed_fix == ManualReview("completed_without_ledger_record")


def test_each_record_is_claimed_once():
    # The pair is reported once as a duplicate, never again by a later pass.
    early = _row("R-early", time="10:00", created=T0)
    late = _row("R-late", time="11:00", created=T0 + timedelta(minutes=3))
    ledger = [_ledger("R-early", time="10:00"), _ledger("R-late", time="11:00")]

    found = DriftDetector().detect(_snapshot([early, late]), ledger)

    assert len(found) == 1
    assert sorted(found[0].entity_refs) == ["R-early", "R-late"]


def test_reviewed_intake_completes_pending_reservation():
    intake = IntakeView(
        id=7, patient_identity="1001", linked_reservation_id="R1", review_status="approved", created_at=T0
    )

    found = DriftDetector().detect(_snapshot([_row("R1")], intakes=[intake]), [_ledger("R1")])

    assert found[0].kind == DiscrepancyKind.stale_status
    assert found[0].proposed_fix == CompleteReservation("R1", 7)


def test_reschedule_missing_and_ledger_lag():
    rows = [_row("R1", time="10:00"), _row("R4", patient="1003", status="canceled")]
    ledger = [
        _ledger("R1", time="11:00"),
        _ledger("R3", patient="1002", day=date(2026, 2, 7), time="09:00"),
        _ledger("R4", patient="1003"),
    ]

    found = DriftDetector().detect(_snapshot(rows), ledger)

    assert [item.kind for item in found] == [
        DiscrepancyKind.rescheduled,
        DiscrepancyKind.missing,
        DiscrepancyKind.ledger_lag,
    ]
    assert found[0].proposed_fix == RescheduleReservation("R1", DAY, "10:00", DAY, "11:00")
    assert isinstance(found[1].proposed_fix, InsertReservation)
    assert found[2].proposed_fix == CancelLedgerRecord("R4")


def test_missing_with_same_day_booking_needs_review():
    ledger = [_ledger("R1"), _ledger("R2", time="16:00")]

    found = DriftDetector().detect(_snapshot([_row("R1")]), ledger)

    assert found[0].kind == DiscrepancyKind.missing
    assert found[0].proposed_fix.reason_code == "ledger_only_booking_conflicts"


def test_orphaned_identities_come_first():
    rows = [_row("R1", patient="LINE_U1"), _row("R2", patient="9999", time="15:00")]
    ledger = [_ledger("R1", patient="LINE_U1"), _ledger("R2", patient="9999", time="15:00")]

    found = DriftDetector().detect(_snapshot(rows), ledger)

    assert [item.kind for item in found] == [DiscrepancyKind.orphaned_identity] * 2
    by_identity = {item.patient_identities[0]: item.proposed_fix for item in found}
    assert by_identity["LINE_U1"] == ResolveIdentity("LINE_U1", chat_id="U1", reservation_ids=("R1",))
    assert by_identity["9999"] == ManualReview("unknown_permanent_identity")


def test_ledger_patient_mismatch_resolves_temporary_to_permanent():
    snapshot = _snapshot([_row("R1", patient="LINE_U1")], patients=("1001", "LINE_U1"))

    found = DriftDetector().detect(snapshot, [_ledger("R1", patient="1001")])

    assert found[0].kind == DiscrepancyKind.orphaned_identity
    assert found[0].proposed_fix == ResolveIdentity(
        "LINE_U1", chat_id="U1", permanent_id="1001", reservation_ids=("R1",)
    )


def test_unsettled_reorders():
    reorders = [
        ReorderView(id=1, patient_identity="1001", product_code="GLP-1", status="confirmed", created_at=T0, updated_at=T0),
        ReorderView(id=2, patient_identity="1002", product_code="GLP-1", status="paid", created_at=T0, updated_at=T0),
        ReorderView(id=3, patient_identity="1003", product_code="GLP-1", status="confirmed", created_at=T0, updated_at=T0),
    ]
    orders = [OrderView(id=11, patient_identity="1001", product_code="GLP-1", paid_at=T0 + timedelta(hours=2))]

    found = DriftDetector().detect(
        _snapshot(reorders=reorders, orders=orders), [], now=T0 + timedelta(days=10)
    )

    fixes = {item.entity_refs[0]: item.proposed_fix for item in found}
    assert fixes["reorder:1"] == SettleReorder(1, 11, T0 + timedelta(hours=2))
    assert fixes["reorder:2"] == ManualReview("paid_without_order")
    assert fixes["reorder:3"] == ManualReview("confirmed_without_payment")

    fresh = DriftDetector().detect(_snapshot(reorders=reorders[2:]), [], now=T0 + timedelta(hours=1))
    assert fresh == []


def test_ledger_rows_repeating_an_id_need_review():
    found = DriftDetector().detect(_snapshot([_row("R1")]), [_ledger("R1"), _ledger("R1", time="14:00")])

    assert [item.kind for item in found] == [DiscrepancyKind.duplicate]
    assert found[0].proposed_fix == ManualReview("ledger_duplicate_rows")


def test_detection_is_pure():
    snapshot = _snapshot([_row("R1")])
    DriftDetector().detect(snapshot, [])

    assert snapshot.reservations[0].status == "pending"
