"""
Tests for the per-kind save/submit lifecycle of funding records.
"""

import pytest
from decimal import Decimal

from funding_engine import RecordKind, RecordStatus
from funding_engine.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError

YEAR, MONTH = 2024, 6
PREDICT = RecordKind.PREDICTED


class TestCreateAndSave:

    @pytest.mark.asyncio
    async def test_new_record_is_unfilled(self, services, reporter):
        record = await services.records.create_record(PREDICT, "ORG-A/DEPT-1", YEAR, MONTH, reporter)
        assert record["status"] == "UNFILLED"
        assert record["amount"] is None

    @pytest.mark.asyncio
    async def test_initial_amount_is_applied_as_a_save(self, services, reporter):
        record = await services.records.create_record(
            PREDICT, "ORG-A/DEPT-1", YEAR, MONTH, reporter, amount="1500.5", remark="Q2 estimate"
        )
        assert record["status"] == "DRAFT"
        assert record["amount"] == Decimal("1500.50")
        assert record["submitted_by"] == "reporter-1"

    @pytest.mark.asyncio
    async def test_duplicate_period_record_conflicts(self, services, reporter):
        await services.records.create_record(PREDICT, "K1", YEAR, MONTH, reporter)
        with pytest.raises(ConflictError):
            await services.records.create_record(PREDICT, "K1", YEAR, MONTH, reporter)

    @pytest.mark.asyncio
    async def test_invalid_period_rejected(self, services, reporter):
        with pytest.raises(ValidationError):
            await services.records.create_record(PREDICT, "K1", YEAR, 13, reporter)

    @pytest.mark.asyncio
    async def test_bad_amount_is_not_saved_as_zero(self, services, reporter):
        record = await services.records.create_record(PREDICT, "K1", YEAR, MONTH, reporter)
        with pytest.raises(ValidationError):
            await services.records.save(PREDICT, record["_id"], {"amount": "12abc"}, reporter)
        stored = await services.records.get(PREDICT, record["_id"])
        assert stored["status"] == "UNFILLED"
        assert stored["amount"] is None

    @pytest.mark.asyncio
    async def test_unknown_fields_cannot_be_edited(self, services, reporter):
        record = await services.records.create_record(PREDICT, "K1", YEAR, MONTH, reporter)
        with pytest.raises(ValidationError):
            await services.records.save(PREDICT, record["_id"], {"status": "APPROVED"}, reporter)

    @pytest.mark.asyncio
    async def test_generate_period_skips_existing_keys(self, services, admin):
        await services.records.create_record(PREDICT, "K1", YEAR, MONTH, admin)
        result = await services.records.generate_period_records(PREDICT, ["K1", "K2", "K3", "K2"], YEAR, MONTH, admin)
        assert result["created"] == 2
        assert result["skipped"] == 1


class TestSubmit:

    @pytest.mark.asyncio
    async def test_submit_requires_amount(self, services, reporter):
        record = await services.records.create_record(PREDICT, "K1", YEAR, MONTH, reporter, remark="no amount yet")
        with pytest.raises(ValidationError):
            await services.records.submit(PREDICT, record["_id"], reporter)

    @pytest.mark.asyncio
    async def test_submit_from_unfilled_is_a_conflict(self, services, reporter):
        record = await services.records.create_record(PREDICT, "K1", YEAR, MONTH, reporter)
        with pytest.raises(ConflictError) as exc:
            await services.records.submit(PREDICT, record["_id"], reporter)
        assert exc.value.current_status == "UNFILLED"

    @pytest.mark.asyncio
    async def test_submitted_record_cannot_be_saved(self, services, reporter, submitted_record):
        record = await submitted_record(PREDICT, "K1", "100", reporter)
        with pytest.raises(ConflictError) as exc:
            await services.records.save(PREDICT, record["_id"], {"amount": "200"}, reporter)
        assert exc.value.current_status == "SUBMITTED"

    @pytest.mark.asyncio
    async def test_batch_submit_is_all_or_nothing(self, services, reporter):
        good = await services.records.create_record(PREDICT, "K1", YEAR, MONTH, reporter, amount="10")
        bad = await services.records.create_record(PREDICT, "K2", YEAR, MONTH, reporter, remark="missing amount")

        with pytest.raises(ValidationError):
            await services.records.batch_submit(PREDICT, [good["_id"], bad["_id"]], reporter)

        assert (await services.records.get(PREDICT, good["_id"]))["status"] == "DRAFT"
        assert (await services.records.get(PREDICT, bad["_id"]))["status"] == "DRAFT"

    @pytest.mark.asyncio
    async def test_batch_save_then_submit(self, services, reporter):
        a = await services.records.create_record(PREDICT, "K1", YEAR, MONTH, reporter)
        b = await services.records.create_record(PREDICT, "K2", YEAR, MONTH, reporter)
        await services.records.batch_save(
            PREDICT, [{"id": a["_id"], "amount": "1"}, {"id": b["_id"], "amount": "2", "remark": "x"}], reporter
        )
        submitted = await services.records.batch_submit(PREDICT, [a["_id"], b["_id"]], reporter)
        assert [r["status"] for r in submitted] == ["SUBMITTED", "SUBMITTED"]


class TestPermissionsAndReads:

    @pytest.mark.asyncio
    async def test_observer_cannot_create(self, services, observer):
        with pytest.raises(PermissionDeniedError):
            await services.records.create_record(PREDICT, "K1", YEAR, MONTH, observer)

    @pytest.mark.asyncio
    async def test_reporter_cannot_write_finance_records(self, services, reporter):
        with pytest.raises(PermissionDeniedError):
            await services.records.create_record(RecordKind.ACTUAL_FINANCE, "K1", YEAR, MONTH, reporter)

    @pytest.mark.asyncio
    async def test_history_records_every_mutation(self, services, reporter, submitted_record):
        record = await submitted_record(PREDICT, "K1", "100", reporter)
        history = await services.records.history_of(PREDICT, record["_id"])
        assert sorted(h["action"] for h in history) == ["create", "save", "submit"]
        submit = next(h for h in history if h["action"] == "submit")
        assert submit["old_value"]["status"] == "DRAFT"
        assert submit["new_value"]["status"] == "SUBMITTED"
        assert submit["user_id"] == "reporter-1"

    @pytest.mark.asyncio
    async def test_missing_record(self, services):
        with pytest.raises(NotFoundError):
            await services.records.get(PREDICT, "does-not-exist")

    @pytest.mark.asyncio
    async def test_list_and_stats(self, services, reporter, submitted_record):
        await submitted_record(PREDICT, "K1", "100", reporter)
        await services.records.create_record(PREDICT, "K2", YEAR, MONTH, reporter)

        listing = await services.records.list_records(PREDICT, {"status": "submitted"})
        assert listing["total"] == 1
        assert listing["items"][0]["fund_need_key"] == "K1"

        stats = await services.records.stats(PREDICT, year=YEAR, month=MONTH)
        assert stats["total"] == 2
        assert stats["by_status"]["SUBMITTED"] == 1
        assert stats["by_status"]["UNFILLED"] == 1


class TestApprovedRecords:

    @pytest.mark.asyncio
    async def test_approved_record_is_immutable(self, services, admin, reconciled_pair):
        user, fin = await reconciled_pair("K1", "100", "100")
        await services.batch.submit_audit(YEAR, MONTH, ["K1"], admin)

        with pytest.raises(ConflictError):
            await services.records.update_remark(RecordKind.ACTUAL_FINANCE, fin["_id"], "late note", admin)
        with pytest.raises(ConflictError):
            await services.records.delete(RecordKind.ACTUAL_USER, user["_id"], admin)

    @pytest.mark.asyncio
    async def test_remark_can_change_before_approval(self, services, reporter, submitted_record):
        record = await submitted_record(PREDICT, "K1", "100", reporter)
        updated = await services.records.update_remark(PREDICT, record["_id"], "corrected note", reporter)
        assert updated["remark"] == "corrected note"
        assert updated["status"] == RecordStatus.SUBMITTED.value
