"""End-to-end tests for the draw transaction against a real SQLite database."""

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta, timezone

import pytest
from sqlalchemy import func, select

from luckydraw import activities, codes, inventory, ledger, redemption
from luckydraw.errors import (
    ActivityNotEligible, ActivityNotFound, CodeAlreadyRedeemed, CodeAlreadyUsed, CodeNotFound,
    EligibilityReason, LotteryError, OutOfStock, PrizeNotFound, RecordNotFound, TotalBelowAwarded,
)
from luckydraw.ledger import ClientInfo
from luckydraw.models import ActivityStatus, CodeStatus, LotteryRecord
from luckydraw.schemas import ActivityIn, PrizeUpdate
from luckydraw.utils import as_utc, utcnow


def record_count(db, **filters):
    stmt = select(func.count(LotteryRecord.id))
    for name, value in filters.items():
        stmt = stmt.where(getattr(LotteryRecord, name) == value)
    return db.scalar(stmt)


class TestDraw:
    def test_certain_prize_then_exhausted(self, db, activity, make_prize, make_code):
        prize = make_prize(activity, name="Bike", total=1, probability=1.0)
        make_code(activity, "00000001")
        make_code(activity, "00000002")

        first = redemption.draw(db, activity.id, "00000001", rng=random.Random(1))
        assert first.is_winner
        assert first.prize.id == prize.id
        assert inventory.get_prize(db, prize.id).remaining_quantity == 0

        second = redemption.draw(db, activity.id, "00000002", rng=random.Random(1))
        assert not second.is_winner
        assert second.record.prize_id is None
        assert codes.lookup(db, activity.id, "00000002").status == CodeStatus.USED

    def test_outcome_response(self, db, activity, make_prize, make_code):
        make_prize(activity, name="Mug", total=3, probability=1.0)
        make_code(activity, "00000003", participant_info={"name": "Ada"})
        response = redemption.draw(db, activity.id, "00000003").as_response()
        assert response.is_winner
        assert response.prize.name == "Mug"
        assert response.lottery_code.participant_info == {"name": "Ada"}
        assert response.message == redemption.WIN_MESSAGE

    def test_no_prizes_is_a_recorded_loss(self, db, activity, make_code):
        make_code(activity, "00000004")
        outcome = redemption.draw(db, activity.id, "00000004")
        assert not outcome.is_winner
        assert outcome.as_response().message == redemption.NO_WIN_MESSAGE
        assert record_count(db, lottery_code_id=outcome.lottery_code.id) == 1

    def test_guaranteed_activity_always_wins_while_stocked(self, db, make_activity, make_prize, make_code):
        activity = make_activity(strategy="guaranteed")
        make_prize(activity, name="a", total=2)
        make_prize(activity, name="b", total=1)
        results = []
        for i in range(4):
            make_code(activity, f"3000000{i}")
            results.append(redemption.draw(db, activity.id, f"3000000{i}", rng=random.Random(i)))
        assert [o.is_winner for o in results] == [True, True, True, False]
        assert inventory.list_active(db, activity.id) == []

    def test_client_info_is_recorded(self, db, activity, make_code):
        make_code(activity, "00000005")
        outcome = redemption.draw(db, activity.id, "00000005", ClientInfo(ip="10.0.0.1", user_agent="pytest"))
        record = ledger.get_record(db, outcome.record.id)
        assert (record.ip_address, record.user_agent, record.draw_type) == ("10.0.0.1", "pytest", "online")

    def test_window_given_with_utc_offset(self, db, make_code):
        plus8 = timezone(timedelta(hours=8))
        now = utcnow()
        activity = activities.create_activity(
            db,
            ActivityIn(
                name="Offset",
                status=ActivityStatus.ACTIVE,
                start_time=(now - timedelta(hours=1)).astimezone(plus8),
                end_time=(now + timedelta(hours=1)).astimezone(plus8),
            ),
        )
        stored = activities.get_activity(db, activity.id)
        assert as_utc(stored.start_time) == now - timedelta(hours=1)
        make_code(activity, "00000006")
        assert redemption.draw(db, activity.id, "00000006").record.id

    def test_window_ended_in_other_offset(self, db, make_code):
        plus8 = timezone(timedelta(hours=8))
        now = utcnow()
        activity = activities.create_activity(
            db,
            ActivityIn(
                name="Offset",
                status=ActivityStatus.ACTIVE,
                start_time=(now - timedelta(hours=2)).astimezone(plus8),
                end_time=(now - timedelta(minutes=30)).astimezone(plus8),
            ),
        )
        make_code(activity, "00000007")
        with pytest.raises(ActivityNotEligible) as exc_info:
            redemption.draw(db, activity.id, "00000007")
        assert exc_info.value.reason == EligibilityReason.ENDED


class TestRejections:
    @pytest.mark.parametrize("kwargs, reason", [
        ({"status": ActivityStatus.DRAFT}, EligibilityReason.NOT_ACTIVE),
        ({"status": ActivityStatus.ENDED}, EligibilityReason.NOT_ACTIVE),
        ({"start": utcnow() + timedelta(days=1), "end": utcnow() + timedelta(days=2)}, EligibilityReason.NOT_STARTED),
        ({"start": utcnow() - timedelta(days=2), "end": utcnow() - timedelta(days=1)}, EligibilityReason.ENDED),
    ])
    def test_ineligible_activity(self, db, make_activity, make_code, kwargs, reason):
        activity = make_activity(**kwargs)
        make_code(activity, "00000010")
        with pytest.raises(ActivityNotEligible) as exc_info:
            redemption.draw(db, activity.id, "00000010")
        assert exc_info.value.reason == reason
        assert codes.lookup(db, activity.id, "00000010").status == CodeStatus.UNUSED

    def test_open_ended_window(self, db, make_activity, make_code):
        activity = make_activity()
        activity.start_time = None
        activity.end_time = None
        db.commit()
        make_code(activity, "00000011")
        assert redemption.draw(db, activity.id, "00000011").record.id

    def test_unknown_activity(self, db):
        with pytest.raises(ActivityNotFound):
            redemption.draw(db, 404, "00000000")

    def test_unknown_code(self, db, activity):
        with pytest.raises(CodeNotFound):
            redemption.draw(db, activity.id, "99999999")

    def test_code_reuse(self, db, activity, make_code):
        make_code(activity, "00000012")
        redemption.draw(db, activity.id, "00000012")
        with pytest.raises(CodeAlreadyUsed):
            redemption.draw(db, activity.id, "00000012")
        assert record_count(db, activity_id=activity.id) == 1

    def test_invalid_code(self, db, activity, make_code):
        make_code(activity, "00000013", status=CodeStatus.INVALID)
        with pytest.raises(CodeAlreadyUsed):
            redemption.draw(db, activity.id, "00000013")

    def test_existing_record_blocks_unused_code(self, db, activity, make_code):
        lottery_code = make_code(activity, "00000014")
        ledger.append_record(db, activity_id=activity.id, lottery_code_id=lottery_code.id, prize_id=None)
        db.commit()
        with pytest.raises(CodeAlreadyRedeemed):
            redemption.draw(db, activity.id, "00000014")

    def test_failure_rolls_everything_back(self, db, activity, make_prize, make_code, monkeypatch):
        prize = make_prize(activity, total=1, probability=1.0)
        make_code(activity, "00000015")

        def boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(ledger, "append_record", boom)
        with pytest.raises(RuntimeError):
            redemption.draw(db, activity.id, "00000015")

        assert inventory.get_prize(db, prize.id).remaining_quantity == 1
        assert codes.lookup(db, activity.id, "00000015").status == CodeStatus.UNUSED
        assert record_count(db) == 0

    def test_rejection_is_logged(self, db, activity, caplog):
        with caplog.at_level(logging.INFO, logger="luckydraw"):
            with pytest.raises(LotteryError):
                redemption.draw(db, activity.id, "nope")
        assert "CODE_NOT_FOUND" in caplog.text


class TestStockRace:
    def test_lost_race_becomes_no_win(self, db, session_factory, activity, make_prize, make_code, monkeypatch, caplog):
        prize = make_prize(activity, total=1, probability=1.0)
        make_code(activity, "00000020")
        stale = inventory.list_active(db, activity.id)
        db.commit()

        # another redemption takes the last unit after our snapshot was read
        with session_factory() as other:
            inventory.deduct(other, prize.id, 1)
            other.commit()

        monkeypatch.setattr(inventory, "list_active", lambda db, activity_id: stale)
        with caplog.at_level(logging.WARNING, logger="luckydraw"):
            outcome = redemption.draw(db, activity.id, "00000020")

        assert not outcome.is_winner
        assert outcome.stock_raced
        assert outcome.record.prize_id is None
        assert outcome.lottery_code.status == CodeStatus.USED
        assert inventory.get_prize(db, prize.id).remaining_quantity == 0
        assert "ran out" in caplog.text


class TestOfflineDraw:
    def test_operator_is_recorded(self, db, activity, make_code):
        make_code(activity, "00000030")
        outcome = redemption.offline_draw(db, activity.id, "00000030", operator_id=7)
        assert outcome.record.operator_id == 7
        assert outcome.record.draw_type == "offline"

    def test_forced_prize(self, db, activity, make_prize, make_code):
        make_prize(activity, name="likely", total=10, probability=1.0)
        forced = make_prize(activity, name="forced", total=1)
        make_code(activity, "00000031")
        outcome = redemption.offline_draw(db, activity.id, "00000031", 7, forced_prize_id=forced.id)
        assert outcome.prize.id == forced.id
        assert inventory.get_prize(db, forced.id).remaining_quantity == 0

    def test_forced_prize_out_of_stock_is_an_error(self, db, activity, make_prize, make_code):
        forced = make_prize(activity, total=0)
        make_code(activity, "00000032")
        with pytest.raises(OutOfStock):
            redemption.offline_draw(db, activity.id, "00000032", 7, forced_prize_id=forced.id)
        assert codes.lookup(db, activity.id, "00000032").status == CodeStatus.UNUSED

    def test_forced_prize_from_other_activity(self, db, make_activity, make_prize, make_code):
        activity, other = make_activity(), make_activity()
        foreign = make_prize(other, total=5)
        make_code(activity, "00000033")
        with pytest.raises(PrizeNotFound):
            redemption.offline_draw(db, activity.id, "00000033", 7, forced_prize_id=foreign.id)
        assert inventory.get_prize(db, foreign.id).remaining_quantity == 5

    def test_offline_draw_checks_eligibility(self, db, make_activity, make_code):
        activity = make_activity(status=ActivityStatus.DRAFT)
        make_code(activity, "00000034")
        with pytest.raises(ActivityNotEligible):
            redemption.offline_draw(db, activity.id, "00000034", 7)


class TestDeleteRecord:
    def test_undo_after_total_shrinks_to_awarded(self, db, activity, make_prize, make_code):
        prize = make_prize(activity, total=2, probability=1.0)
        make_code(activity, "00000045")
        outcome = redemption.draw(db, activity.id, "00000045")

        with pytest.raises(TotalBelowAwarded):
            inventory.update_prize(db, prize.id, PrizeUpdate(total_quantity=0))
        inventory.update_prize(db, prize.id, PrizeUpdate(total_quantity=1))

        redemption.delete_record(db, outcome.record.id)
        restored = inventory.get_prize(db, prize.id)
        assert (restored.total_quantity, restored.remaining_quantity) == (1, 1)

    def test_delete_restores_stock_and_code(self, db, activity, make_prize, make_code):
        prize = make_prize(activity, total=2, probability=1.0)
        make_code(activity, "00000040")
        outcome = redemption.draw(db, activity.id, "00000040")
        assert inventory.get_prize(db, prize.id).remaining_quantity == 1

        redemption.delete_record(db, outcome.record.id)

        assert inventory.get_prize(db, prize.id).remaining_quantity == 2
        assert codes.lookup(db, activity.id, "00000040").status == CodeStatus.UNUSED
        with pytest.raises(RecordNotFound):
            ledger.get_record(db, outcome.record.id)
        assert redemption.draw(db, activity.id, "00000040").is_winner

    def test_delete_losing_record(self, db, activity, make_code):
        make_code(activity, "00000041")
        outcome = redemption.draw(db, activity.id, "00000041")
        redemption.delete_record(db, outcome.record.id)
        assert record_count(db) == 0

    def test_batch_delete(self, db, activity, make_prize, make_code):
        prize = make_prize(activity, total=3, probability=1.0)
        ids = []
        for code in ("00000042", "00000043"):
            make_code(activity, code)
            ids.append(redemption.draw(db, activity.id, code).record.id)
        assert redemption.delete_records(db, ids + ids[:1]) == 2
        assert inventory.get_prize(db, prize.id).remaining_quantity == 3
        assert record_count(db) == 0

    def test_batch_delete_is_all_or_nothing(self, db, activity, make_prize, make_code):
        prize = make_prize(activity, total=3, probability=1.0)
        make_code(activity, "00000044")
        record_id = redemption.draw(db, activity.id, "00000044").record.id
        with pytest.raises(RecordNotFound):
            redemption.delete_records(db, [record_id, 999])
        assert inventory.get_prize(db, prize.id).remaining_quantity == 2
        assert record_count(db) == 1


class TestConcurrency:
    THREADS = 8

    def _race(self, session_factory, activity_id, codes_to_draw):
        barrier = threading.Barrier(len(codes_to_draw))

        def attempt(code):
            barrier.wait()
            with session_factory() as session:
                try:
                    return redemption.draw(session, activity_id, code).is_winner
                except LotteryError as exc:
                    return exc

        with ThreadPoolExecutor(max_workers=len(codes_to_draw)) as pool:
            return list(pool.map(attempt, codes_to_draw))

    def test_same_code_redeemed_once(self, db, session_factory, activity, make_code):
        lottery_code = make_code(activity, "00000050")
        results = self._race(session_factory, activity.id, ["00000050"] * self.THREADS)

        errors = [r for r in results if isinstance(r, LotteryError)]
        assert len(results) - len(errors) == 1
        assert all(isinstance(e, (CodeAlreadyUsed, CodeAlreadyRedeemed)) for e in errors)
        assert record_count(db, lottery_code_id=lottery_code.id) == 1

    def test_last_unit_never_oversold(self, db, session_factory, make_activity, make_prize, make_code):
        activity = make_activity(strategy="guaranteed")
        prize = make_prize(activity, total=1)
        batch = [f"6000000{i}" for i in range(self.THREADS)]
        for code in batch:
            make_code(activity, code)

        results = self._race(session_factory, activity.id, batch)

        assert results.count(True) == 1
        assert results.count(False) == self.THREADS - 1
        assert inventory.get_prize(db, prize.id).remaining_quantity == 0
        assert record_count(db, is_winner=True) == 1
