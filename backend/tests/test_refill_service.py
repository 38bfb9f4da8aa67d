"""
Refill lifecycle tests.

Exercises create/respond/query rules of rxportal.services.refill_service
without a database: the storage helpers (_get_order, _find_pending_for_order,
_load_refill, _claim_pending) are patched and the session is an AsyncMock.

Test categories:
  1. Creation (validation order, state checks, duplicate-pending guard)
  2. Response (status validation, ownership, exactly-once transition)
  3. Queries (listing filters, visibility)
  4. Side-effect dispatch
  5. Maintenance cleanup
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from rxportal.models import Order, Pharmacy, RefillRequest, User


SERVICE = "rxportal.services.refill_service"

PHARMACY_ID = uuid4()
PHARMACY_USER_ID = uuid4()
OTHER_PHARMACY_USER_ID = uuid4()
PATIENT_ID = uuid4()
PRESCRIPTION_ID = uuid4()


# ---------------------------------------------------------------------------
# Helpers & Fixtures
# ---------------------------------------------------------------------------

def _patient(user_id=None):
    return User(
        id=user_id or PATIENT_ID,
        email="pat.doe@example.com",
        password_hash="x",
        first_name="Pat",
        last_name="Doe",
        role="patient",
        is_active=True,
    )


def _operator(user_id=None):
    return User(
        id=user_id or PHARMACY_USER_ID,
        email="ops@corner-pharmacy.example.com",
        password_hash="x",
        first_name="Olive",
        last_name="Ops",
        role="pharmacy",
        is_active=True,
    )


def _pharmacy():
    return Pharmacy(
        id=PHARMACY_ID,
        user_id=PHARMACY_USER_ID,
        pharmacy_name="Corner Pharmacy",
        email="orders@corner-pharmacy.example.com",
    )


def _order(status="delivered", patient_id=None):
    return Order(
        id=uuid4(),
        order_number="ORD-1001",
        patient_id=patient_id or PATIENT_ID,
        pharmacy_id=PHARMACY_ID,
        prescription_id=PRESCRIPTION_ID,
        status=status,
    )


def _refill(order=None, status="pending", **overrides):
    order = order or _order()
    now = datetime.now(timezone.utc)
    refill = RefillRequest(
        id=uuid4(),
        original_order_id=order.id,
        prescription_id=PRESCRIPTION_ID,
        patient_id=order.patient_id,
        pharmacy_id=PHARMACY_ID,
        status=status,
        medications=[{"name": "Lisinopril", "dosage": "10mg", "frequency": "daily",
                      "duration": None, "instructions": None}],
        notes=None,
        requested_at=now,
        created_at=now,
    )
    refill.patient = _patient(order.patient_id)
    refill.pharmacy = _pharmacy()
    refill.original_order = order
    for key, value in overrides.items():
        setattr(refill, key, value)
    return refill


def _mock_db():
    """AsyncSession stand-in; ``add`` is synchronous on the real session."""
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    return db


def _create_kwargs(order, **overrides):
    kwargs = dict(
        patient=_patient(),
        original_order_id=str(order.id),
        prescription_id=str(PRESCRIPTION_ID),
        pharmacy_id=str(PHARMACY_ID),
        medications=[{"name": "Lisinopril", "dosage": "10mg", "frequency": "daily"}],
        notes="Running low",
        dispatcher=MagicMock(),
        session_factory=MagicMock(),
    )
    kwargs.update(overrides)
    return kwargs


# ===================================================================
# 1. CREATION
# ===================================================================


class TestCreateRefillRequest:
    """Creation rules, checked in order, nothing written on failure."""

    @pytest.mark.asyncio
    async def test_create_delivered_order_is_pending(self):
        from rxportal.services.refill_service import create_refill_request

        order = _order("delivered")
        populated = _refill(order)
        db = _mock_db()

        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=None)), \
             patch(f"{SERVICE}._load_refill", AsyncMock(return_value=populated)):
            result = await create_refill_request(db, **_create_kwargs(order))

        assert result is populated
        assert result.status == "pending"
        db.commit.assert_awaited_once()

        staged = db.add.call_args_list[0].args[0]
        assert isinstance(staged, RefillRequest)
        assert staged.status == "pending"
        assert staged.patient_id == PATIENT_ID
        assert staged.original_order_id == order.id
        assert staged.notes == "Running low"
        assert staged.medications == [{
            "name": "Lisinopril", "dosage": "10mg", "frequency": "daily",
            "duration": None, "instructions": None,
        }]

    @pytest.mark.asyncio
    async def test_create_completed_order_allowed(self):
        from rxportal.services.refill_service import create_refill_request

        order = _order("completed")
        db = _mock_db()

        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=None)), \
             patch(f"{SERVICE}._load_refill", AsyncMock(return_value=_refill(order))):
            result = await create_refill_request(db, **_create_kwargs(order))

        assert result.status == "pending"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["placed", "confirmed", "preparing", "ready",
                                        "out_for_delivery", "cancelled", "on_hold"])
    async def test_create_non_refillable_order_rejected(self, status):
        from rxportal.services.refill_service import InvalidState, create_refill_request

        order = _order(status)
        db = _mock_db()

        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=None)) as pending:
            with pytest.raises(InvalidState) as exc_info:
                await create_refill_request(db, **_create_kwargs(order))

        assert exc_info.value.message == f"Cannot request refill for order with status: {status}."
        assert exc_info.value.status_code == 400
        pending.assert_not_awaited()
        db.add.assert_not_called()
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_missing_fields_listed(self):
        from rxportal.services.refill_service import InvalidArgument, create_refill_request

        db = _mock_db()
        with patch(f"{SERVICE}._get_order", AsyncMock()) as get_order:
            with pytest.raises(InvalidArgument) as exc_info:
                await create_refill_request(
                    db, patient=_patient(), original_order_id=None,
                    prescription_id="", pharmacy_id=str(PHARMACY_ID),
                )

        assert exc_info.value.message == "Missing required fields: original_order_id, prescription_id"
        get_order.assert_not_awaited()
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_malformed_id_is_invalid_argument(self):
        from rxportal.services.refill_service import InvalidArgument, create_refill_request

        db = _mock_db()
        with pytest.raises(InvalidArgument, match="original_order_id"):
            await create_refill_request(
                db, patient=_patient(), original_order_id="not-a-uuid",
                prescription_id=str(PRESCRIPTION_ID), pharmacy_id=str(PHARMACY_ID),
            )
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_unknown_order_not_found(self):
        from rxportal.services.refill_service import NotFound, create_refill_request

        order = _order()
        db = _mock_db()
        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=None)):
            with pytest.raises(NotFound) as exc_info:
                await create_refill_request(db, **_create_kwargs(order))

        assert exc_info.value.message == "Original order not found"
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_create_other_patients_order_forbidden(self):
        from rxportal.services.refill_service import Forbidden, create_refill_request

        order = _order(patient_id=uuid4())
        db = _mock_db()
        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=None)):
            with pytest.raises(Forbidden) as exc_info:
                await create_refill_request(db, **_create_kwargs(order))

        assert exc_info.value.message == "Unauthorized to request refill for this order"
        assert exc_info.value.status_code == 403
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_ownership_checked_before_status(self):
        """A foreign order that is also not refillable reports Forbidden."""
        from rxportal.services.refill_service import Forbidden, create_refill_request

        order = _order("placed", patient_id=uuid4())
        db = _mock_db()
        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)):
            with pytest.raises(Forbidden):
                await create_refill_request(db, **_create_kwargs(order))

    @pytest.mark.asyncio
    async def test_create_second_pending_is_conflict(self):
        from rxportal.services.refill_service import Conflict, create_refill_request

        order = _order()
        db = _mock_db()
        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=uuid4())):
            with pytest.raises(Conflict) as exc_info:
                await create_refill_request(db, **_create_kwargs(order))

        assert exc_info.value.message == "A refill request is already pending for this order"
        assert exc_info.value.status_code == 400
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_race_lost_on_unique_index_is_conflict(self):
        """Both callers passed the pre-check; the partial index rejects the loser."""
        from rxportal.services.refill_service import Conflict, create_refill_request

        order = _order()
        db = _mock_db()
        db.flush.side_effect = IntegrityError(
            "INSERT INTO refill_requests ...",
            {},
            Exception('duplicate key value violates unique constraint "uq_refill_requests_pending_order"'),
        )
        dispatcher = MagicMock()

        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=None)):
            with pytest.raises(Conflict):
                await create_refill_request(db, **_create_kwargs(order, dispatcher=dispatcher))

        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_other_integrity_error_is_invalid_argument(self):
        from rxportal.services.refill_service import InvalidArgument, create_refill_request

        order = _order()
        db = _mock_db()
        db.flush.side_effect = IntegrityError(
            "INSERT INTO refill_requests ...",
            {},
            Exception('insert or update violates foreign key constraint "refill_requests_pharmacy_id_fkey"'),
        )

        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=None)):
            with pytest.raises(InvalidArgument, match="Failed to save refill request"):
                await create_refill_request(db, **_create_kwargs(order))

        db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_create_database_failure_is_internal(self):
        from rxportal.services.refill_service import Internal, create_refill_request

        order = _order()
        db = _mock_db()
        db.commit.side_effect = OperationalError("COMMIT", {}, Exception("connection reset"))

        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=None)):
            with pytest.raises(Internal) as exc_info:
                await create_refill_request(db, **_create_kwargs(order))

        assert exc_info.value.status_code == 500
        db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_create_stages_audit_entry(self):
        from rxportal.models import AuditLog
        from rxportal.services.refill_service import create_refill_request

        order = _order()
        db = _mock_db()
        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=None)), \
             patch(f"{SERVICE}._load_refill", AsyncMock(return_value=_refill(order))):
            await create_refill_request(db, **_create_kwargs(order, client_ip="203.0.113.9"))

        audits = [c.args[0] for c in db.add.call_args_list if isinstance(c.args[0], AuditLog)]
        assert len(audits) == 1
        assert audits[0].action == "refill.create"
        assert audits[0].ip_address == "203.0.113.9"
        assert audits[0].user_id == PATIENT_ID


class TestPendingLookup:
    """The duplicate check is bounded by a timeout."""

    @pytest.mark.asyncio
    async def test_pending_lookup_timeout_is_internal(self):
        from rxportal.services.refill_service import Internal, _find_pending_for_order

        async def _slow(*args, **kwargs):
            await asyncio.sleep(1)

        db = _mock_db()
        db.execute = _slow
        settings = MagicMock()
        settings.REFILL_QUERY_TIMEOUT_SECONDS = 0.01

        with patch(f"{SERVICE}.get_settings", return_value=settings):
            with pytest.raises(Internal, match="Database error while checking existing requests"):
                await _find_pending_for_order(db, uuid4())

    @pytest.mark.asyncio
    async def test_pending_lookup_returns_existing_id(self):
        from rxportal.services.refill_service import _find_pending_for_order

        existing = uuid4()
        result = MagicMock()
        result.scalar_one_or_none.return_value = existing
        db = _mock_db()
        db.execute = AsyncMock(return_value=result)

        assert await _find_pending_for_order(db, uuid4()) == existing


class TestNormalizeMedications:

    def test_non_list_becomes_empty(self):
        from rxportal.services.refill_service import normalize_medications

        assert normalize_medications(None) == []
        assert normalize_medications("Lisinopril") == []
        assert normalize_medications({"name": "Lisinopril"}) == []

    def test_unknown_keys_dropped_and_non_dicts_skipped(self):
        from rxportal.services.refill_service import normalize_medications

        result = normalize_medications([
            {"name": "Metformin", "dosage": 500, "color": "white"},
            "garbage",
        ])
        assert result == [{
            "name": "Metformin", "dosage": "500", "frequency": None,
            "duration": None, "instructions": None,
        }]


# ===================================================================
# 2. RESPONSE
# ===================================================================


class TestRespondToRefillRequest:
    """pending -> approved | rejected, exactly once, by the owning pharmacy."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        ["approve", "APPROVED", "pending", "", None, 1, "rejected ", ["approved"], {"s": "approved"}],
    )
    async def test_respond_invalid_status(self, status):
        from rxportal.services.refill_service import InvalidArgument, respond_to_refill_request

        db = _mock_db()
        with patch(f"{SERVICE}._load_refill", AsyncMock()) as load:
            with pytest.raises(InvalidArgument) as exc_info:
                await respond_to_refill_request(
                    db, operator=_operator(), refill_id=uuid4(), status=status,
                )

        assert exc_info.value.message == "Invalid status. Must be 'approved' or 'rejected'"
        load.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_respond_unknown_request_not_found(self):
        from rxportal.services.refill_service import NotFound, respond_to_refill_request

        db = _mock_db()
        with patch(f"{SERVICE}._load_refill", AsyncMock(return_value=None)):
            with pytest.raises(NotFound, match="Refill request not found"):
                await respond_to_refill_request(
                    db, operator=_operator(), refill_id=uuid4(), status="approved",
                )

    @pytest.mark.asyncio
    async def test_respond_approve_by_owner(self):
        from rxportal.services.refill_service import respond_to_refill_request

        refill = _refill()
        now = datetime.now(timezone.utc)
        updated = _refill(
            refill.original_order, status="approved", id=refill.id,
            response_message="Ready Friday", responded_at=now, responded_by=PHARMACY_USER_ID,
        )
        db = _mock_db()
        dispatcher = MagicMock()

        with patch(f"{SERVICE}._load_refill", AsyncMock(side_effect=[refill, updated])), \
             patch(f"{SERVICE}._claim_pending", AsyncMock(return_value=True)) as claim:
            result = await respond_to_refill_request(
                db, operator=_operator(), refill_id=refill.id, status="approved",
                message="Ready Friday", dispatcher=dispatcher, session_factory=MagicMock(),
            )

        values = claim.await_args.args[2]
        assert values["status"] == "approved"
        assert values["response_message"] == "Ready Friday"
        assert values["responded_by"] == PHARMACY_USER_ID
        assert values["responded_at"] is not None
        db.commit.assert_awaited_once()

        assert result.status == "approved"
        assert result.pharmacy_response["responded_at"] == now
        assert result.pharmacy_response["message"] == "Ready Friday"

    @pytest.mark.asyncio
    async def test_respond_reject_without_message(self):
        from rxportal.services.refill_service import respond_to_refill_request

        refill = _refill()
        db = _mock_db()
        with patch(f"{SERVICE}._load_refill", AsyncMock(side_effect=[refill, _refill(status="rejected")])), \
             patch(f"{SERVICE}._claim_pending", AsyncMock(return_value=True)) as claim:
            result = await respond_to_refill_request(
                db, operator=_operator(), refill_id=refill.id, status="rejected",
                dispatcher=MagicMock(), session_factory=MagicMock(),
            )

        assert claim.await_args.args[2]["response_message"] is None
        assert result.status == "rejected"

    @pytest.mark.asyncio
    async def test_respond_owner_matched_by_pharmacy_id(self):
        """An operator whose id is the pharmacy id itself is also an owner."""
        from rxportal.services.refill_service import respond_to_refill_request

        refill = _refill()
        db = _mock_db()
        with patch(f"{SERVICE}._load_refill", AsyncMock(side_effect=[refill, refill])), \
             patch(f"{SERVICE}._claim_pending", AsyncMock(return_value=True)):
            await respond_to_refill_request(
                db, operator=_operator(PHARMACY_ID), refill_id=refill.id, status="approved",
                dispatcher=MagicMock(), session_factory=MagicMock(),
            )
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_respond_other_pharmacy_forbidden(self):
        from rxportal.services.refill_service import Forbidden, respond_to_refill_request

        refill = _refill()
        db = _mock_db()
        dispatcher = MagicMock()
        with patch(f"{SERVICE}._load_refill", AsyncMock(return_value=refill)), \
             patch(f"{SERVICE}._claim_pending", AsyncMock()) as claim:
            with pytest.raises(Forbidden) as exc_info:
                await respond_to_refill_request(
                    db, operator=_operator(OTHER_PHARMACY_USER_ID), refill_id=refill.id,
                    status="approved", dispatcher=dispatcher,
                )

        assert exc_info.value.message == "Unauthorized to respond to this refill request"
        assert refill.status == "pending"
        claim.assert_not_awaited()
        db.commit.assert_not_awaited()
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_respond_already_processed_is_conflict(self):
        from rxportal.services.refill_service import Conflict, respond_to_refill_request

        responded_at = datetime(2026, 1, 2, tzinfo=timezone.utc)
        refill = _refill(
            status="approved", response_message="first", responded_at=responded_at,
            responded_by=PHARMACY_USER_ID,
        )
        before = dict(refill.pharmacy_response)
        db = _mock_db()

        with patch(f"{SERVICE}._load_refill", AsyncMock(return_value=refill)), \
             patch(f"{SERVICE}._claim_pending", AsyncMock()) as claim:
            with pytest.raises(Conflict, match="already been processed"):
                await respond_to_refill_request(
                    db, operator=_operator(), refill_id=refill.id, status="rejected",
                    message="second",
                )

        claim.assert_not_awaited()
        assert refill.pharmacy_response == before

    @pytest.mark.asyncio
    async def test_respond_concurrent_loser_gets_conflict(self):
        """Two operators read pending; only the first conditional update matches."""
        from rxportal.services.refill_service import Conflict, respond_to_refill_request

        refill = _refill()
        db = _mock_db()
        dispatcher = MagicMock()

        with patch(f"{SERVICE}._load_refill", AsyncMock(side_effect=[refill, refill, refill])), \
             patch(f"{SERVICE}._claim_pending", AsyncMock(side_effect=[True, False])):
            results = await asyncio.gather(
                respond_to_refill_request(
                    db, operator=_operator(), refill_id=refill.id, status="approved",
                    dispatcher=dispatcher, session_factory=MagicMock(),
                ),
                respond_to_refill_request(
                    db, operator=_operator(), refill_id=refill.id, status="rejected",
                    dispatcher=dispatcher, session_factory=MagicMock(),
                ),
                return_exceptions=True,
            )

        conflicts = [r for r in results if isinstance(r, Conflict)]
        assert len(conflicts) == 1
        assert dispatcher.submit.call_count == 1
        db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_respond_commit_failure_is_internal(self):
        from rxportal.services.refill_service import Internal, respond_to_refill_request

        refill = _refill()
        db = _mock_db()
        db.commit.side_effect = OperationalError("COMMIT", {}, Exception("server closed"))

        with patch(f"{SERVICE}._load_refill", AsyncMock(return_value=refill)), \
             patch(f"{SERVICE}._claim_pending", AsyncMock(return_value=True)):
            with pytest.raises(Internal):
                await respond_to_refill_request(
                    db, operator=_operator(), refill_id=refill.id, status="approved",
                )
        db.rollback.assert_awaited_once()


# ===================================================================
# 3. QUERIES
# ===================================================================


def _scalars_result(items):
    result = MagicMock()
    result.scalars.return_value.all.return_value = items
    return result


class TestQueries:

    @pytest.mark.asyncio
    async def test_pharmacy_listing_defaults_to_pending(self):
        from rxportal.services.refill_service import list_pharmacy_refill_requests

        db = _mock_db()
        db.execute = AsyncMock(return_value=_scalars_result([_refill()]))

        refills = await list_pharmacy_refill_requests(db, pharmacy_id=PHARMACY_ID)

        assert len(refills) == 1
        compiled = str(db.execute.await_args.args[0])
        assert "refill_requests.status" in compiled
        assert "ORDER BY refill_requests.requested_at DESC" in compiled

    @pytest.mark.asyncio
    async def test_pharmacy_listing_all_has_no_status_filter(self):
        from rxportal.services.refill_service import list_pharmacy_refill_requests

        db = _mock_db()
        db.execute = AsyncMock(return_value=_scalars_result([]))

        await list_pharmacy_refill_requests(db, pharmacy_id=PHARMACY_ID, status="all")

        compiled = str(db.execute.await_args.args[0])
        assert "refill_requests.status =" not in compiled

    @pytest.mark.asyncio
    async def test_listing_invalid_status_rejected(self):
        from rxportal.services.refill_service import (
            InvalidArgument,
            list_patient_refill_requests,
            list_pharmacy_refill_requests,
        )

        db = _mock_db()
        with pytest.raises(InvalidArgument):
            await list_pharmacy_refill_requests(db, pharmacy_id=PHARMACY_ID, status="archived")
        with pytest.raises(InvalidArgument):
            await list_patient_refill_requests(db, patient_id=PATIENT_ID, status="archived")
        db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_count_pending(self):
        from rxportal.services.refill_service import count_pending_refill_requests

        result = MagicMock()
        result.scalar_one.return_value = 3
        db = _mock_db()
        db.execute = AsyncMock(return_value=result)

        assert await count_pending_refill_requests(db, pharmacy_id=PHARMACY_ID) == 3

    @pytest.mark.asyncio
    async def test_operator_without_pharmacy_not_found(self):
        from rxportal.services.refill_service import NotFound, get_operator_pharmacy

        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        db = _mock_db()
        db.execute = AsyncMock(return_value=result)

        with pytest.raises(NotFound, match="Pharmacy profile not found"):
            await get_operator_pharmacy(db, _operator())

    @pytest.mark.asyncio
    async def test_get_visible_to_patient_and_owning_pharmacy(self):
        from rxportal.services.refill_service import get_refill_request_for_actor

        refill = _refill()
        db = _mock_db()
        with patch(f"{SERVICE}._load_refill", AsyncMock(return_value=refill)):
            assert await get_refill_request_for_actor(db, actor=_patient(), refill_id=refill.id) is refill
            assert await get_refill_request_for_actor(db, actor=_operator(), refill_id=refill.id) is refill

    @pytest.mark.asyncio
    async def test_get_hidden_from_other_patient_and_pharmacy(self):
        from rxportal.services.refill_service import Forbidden, get_refill_request_for_actor

        refill = _refill()
        db = _mock_db()
        with patch(f"{SERVICE}._load_refill", AsyncMock(return_value=refill)):
            with pytest.raises(Forbidden):
                await get_refill_request_for_actor(db, actor=_patient(uuid4()), refill_id=refill.id)
            with pytest.raises(Forbidden):
                await get_refill_request_for_actor(
                    db, actor=_operator(OTHER_PHARMACY_USER_ID), refill_id=refill.id,
                )


# ===================================================================
# 4. SIDE-EFFECT DISPATCH
# ===================================================================


class TestSideEffectDispatch:
    """Notifications are submitted after commit and never affect the result."""

    @pytest.mark.asyncio
    async def test_create_submits_pharmacy_notification(self):
        from rxportal.services.refill_notifications import RefillNotice, notify_pharmacy_of_request
        from rxportal.services.refill_service import create_refill_request

        order = _order()
        populated = _refill(order)
        db = _mock_db()
        dispatcher = MagicMock()
        session_factory = MagicMock()

        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=None)), \
             patch(f"{SERVICE}._load_refill", AsyncMock(return_value=populated)):
            await create_refill_request(
                db, **_create_kwargs(order, dispatcher=dispatcher, session_factory=session_factory),
            )

        dispatcher.submit.assert_called_once()
        label, func, factory, notice = dispatcher.submit.call_args.args
        assert label == f"refill.notify_pharmacy:{populated.id}"
        assert func is notify_pharmacy_of_request
        assert factory is session_factory
        assert isinstance(notice, RefillNotice)
        assert notice.pharmacy_user_id == PHARMACY_USER_ID
        assert notice.order_number == "ORD-1001"
        assert notice.patient_name == "Pat Doe"

    @pytest.mark.asyncio
    async def test_create_succeeds_when_dispatch_raises(self):
        from rxportal.services.refill_service import create_refill_request

        order = _order()
        populated = _refill(order)
        db = _mock_db()
        dispatcher = MagicMock()
        dispatcher.submit.side_effect = RuntimeError("no running loop")

        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=None)), \
             patch(f"{SERVICE}._load_refill", AsyncMock(return_value=populated)):
            result = await create_refill_request(db, **_create_kwargs(order, dispatcher=dispatcher))

        assert result is populated

    @pytest.mark.asyncio
    async def test_create_succeeds_when_snapshot_fails(self):
        from rxportal.services.refill_service import create_refill_request

        order = _order()
        populated = _refill(order)
        db = _mock_db()
        dispatcher = MagicMock()

        with patch(f"{SERVICE}._get_order", AsyncMock(return_value=order)), \
             patch(f"{SERVICE}._find_pending_for_order", AsyncMock(return_value=None)), \
             patch(f"{SERVICE}._load_refill", AsyncMock(return_value=populated)), \
             patch(f"{SERVICE}.RefillNotice.from_refill", side_effect=AttributeError("pharmacy")):
            result = await create_refill_request(db, **_create_kwargs(order, dispatcher=dispatcher))

        assert result is populated
        db.commit.assert_awaited_once()
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_respond_succeeds_when_snapshot_fails(self):
        from rxportal.services.refill_service import respond_to_refill_request

        refill = _refill()
        updated = _refill(refill.original_order, status="rejected", id=refill.id)
        db = _mock_db()
        dispatcher = MagicMock()

        with patch(f"{SERVICE}._load_refill", AsyncMock(side_effect=[refill, updated])), \
             patch(f"{SERVICE}._claim_pending", AsyncMock(return_value=True)), \
             patch(f"{SERVICE}.RefillNotice.from_refill", side_effect=AttributeError("patient")):
            result = await respond_to_refill_request(
                db, operator=_operator(), refill_id=refill.id, status="rejected",
                dispatcher=dispatcher, session_factory=MagicMock(),
            )

        assert result is updated
        db.commit.assert_awaited_once()
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_respond_submits_patient_notification(self):
        from rxportal.services.refill_notifications import notify_patient_of_response
        from rxportal.services.refill_service import respond_to_refill_request

        refill = _refill()
        updated = _refill(refill.original_order, status="approved", id=refill.id)
        db = _mock_db()
        dispatcher = MagicMock()

        with patch(f"{SERVICE}._load_refill", AsyncMock(side_effect=[refill, updated])), \
             patch(f"{SERVICE}._claim_pending", AsyncMock(return_value=True)):
            await respond_to_refill_request(
                db, operator=_operator(), refill_id=refill.id, status="approved",
                dispatcher=dispatcher, session_factory=MagicMock(),
            )

        label, func, _, notice = dispatcher.submit.call_args.args
        assert label == f"refill.notify_patient:{refill.id}"
        assert func is notify_patient_of_response
        assert notice.status == "approved"
        assert notice.patient_id == PATIENT_ID


# ===================================================================
# 5. MAINTENANCE
# ===================================================================


class TestCleanupDuplicates:

    @pytest.mark.asyncio
    async def test_cleanup_keeps_oldest_per_order(self):
        from rxportal.services.refill_service import cleanup_duplicate_pending_requests

        order_a, order_b = _order(), _order()
        oldest = _refill(order_a)
        dup_1 = _refill(order_a)
        dup_2 = _refill(order_a)
        single = _refill(order_b)

        db = _mock_db()
        db.execute = AsyncMock(return_value=_scalars_result([oldest, single, dup_1, dup_2]))
        db.delete = AsyncMock()

        removed = await cleanup_duplicate_pending_requests(db)

        assert removed == [dup_1.id, dup_2.id]
        assert db.delete.await_count == 2
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cleanup_dry_run_deletes_nothing(self):
        from rxportal.services.refill_service import cleanup_duplicate_pending_requests

        order = _order()
        refills = [_refill(order), _refill(order)]
        db = _mock_db()
        db.execute = AsyncMock(return_value=_scalars_result(refills))
        db.delete = AsyncMock()

        removed = await cleanup_duplicate_pending_requests(db, dry_run=True)

        assert removed == [refills[1].id]
        db.delete.assert_not_awaited()
        db.commit.assert_not_awaited()
