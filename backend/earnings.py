"""Listener earnings: the pricing calculator and the earnings ledger.

``compute_earning`` is a pure function of a finished session and a
``PricingPolicy``. ``EarningsLedger`` turns completed calls and user
messages into ledger entries keyed by the event id, so a trigger that
fires twice for the same call or message records it once.
"""
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional, Tuple

from config import ConfigError, read_policy_file
from errors import InvalidSessionError, NotFound
from store import ADMIN_EARNINGS, CALLS, CHATS, EARNINGS, LISTENERS, now

logger = logging.getLogger(__name__)

SESSION_TYPES = ("call", "message")
CENTS = Decimal("0.01")
RATE_PLACES = Decimal("0.0001")
ZERO = Decimal("0")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _decimal(value: Any, name: str) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidSessionError(f"Session {name} is required.")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidSessionError(f"Session {name} must be a number, got {value!r}.")
    if not result.is_finite():
        raise InvalidSessionError(f"Session {name} must be finite.")
    return result


# ─── PRICING POLICY ────────────────────────────────────
@dataclass(frozen=True)
class RateBand:
    max_minutes: Decimal
    rate: Decimal


@dataclass(frozen=True)
class PricingPolicy:
    """Listener payout rates and the average gross price users pay.

    A call is paid at the rate of the first band whose ``max_minutes`` covers
    its total duration, for the whole duration; longer calls fall through to
    ``call_top_rate``.
    """
    call_bands: Tuple[RateBand, ...]
    call_top_rate: Decimal
    avg_call_price: Decimal
    message_rate: Decimal
    avg_message_price: Decimal

    def __post_init__(self):
        previous = None
        for band in self.call_bands:
            if previous is not None and (band.max_minutes <= previous.max_minutes or band.rate <= previous.rate):
                raise ConfigError("Call bands must have increasing thresholds and increasing rates")
            previous = band
        if previous is not None and self.call_top_rate <= previous.rate:
            raise ConfigError("The top call rate must exceed the last band's rate")
        for name in ("call_top_rate", "avg_call_price", "message_rate", "avg_message_price"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")

    def call_rate(self, minutes: Decimal) -> Decimal:
        for band in self.call_bands:
            if minutes <= band.max_minutes:
                return band.rate
        return self.call_top_rate

    @classmethod
    def from_dict(cls, data: dict) -> "PricingPolicy":
        try:
            bands = tuple(
                RateBand(Decimal(str(b["upTo"])), Decimal(str(b["rate"])))
                for b in data.get("callBands", [])
            )
            return cls(
                call_bands=bands,
                call_top_rate=Decimal(str(data["callTopRate"])),
                avg_call_price=Decimal(str(data["avgCallPrice"])),
                message_rate=Decimal(str(data["messageRate"])),
                avg_message_price=Decimal(str(data["avgMessagePrice"])),
            )
        except (KeyError, TypeError, InvalidOperation) as e:
            raise ConfigError(f"Invalid pricing policy: {e!r}")


DEFAULT_POLICY = PricingPolicy(
    call_bands=(
        RateBand(Decimal("5"), Decimal("2.0")),
        RateBand(Decimal("15"), Decimal("2.5")),
        RateBand(Decimal("30"), Decimal("3.0")),
        RateBand(Decimal("45"), Decimal("3.5")),
    ),
    call_top_rate=Decimal("3.6"),
    avg_call_price=Decimal("9.4"),
    message_rate=Decimal("0.20"),
    avg_message_price=Decimal("2.35"),
)


def load_pricing_policy(path: str = "") -> PricingPolicy:
    if not path:
        return DEFAULT_POLICY
    return PricingPolicy.from_dict(read_policy_file(path))


def rate_card(policy: PricingPolicy = DEFAULT_POLICY) -> dict:
    """Advertised listener rates, at finer precision than payouts."""
    def fmt(value):
        return float(value.quantize(RATE_PLACES, rounding=ROUND_HALF_UP))

    bands = [{"upToMinutes": float(b.max_minutes), "perMinute": fmt(b.rate)} for b in policy.call_bands]
    bands.append({"upToMinutes": None, "perMinute": fmt(policy.call_top_rate)})
    return {
        "call": bands,
        "message": {"perMessage": fmt(policy.message_rate)},
        "averageCallPrice": fmt(policy.avg_call_price),
        "averageMessagePrice": fmt(policy.avg_message_price),
    }


# ─── CALCULATOR ────────────────────────────────────────
@dataclass(frozen=True)
class Session:
    type: Optional[str]
    duration: Any = None   # minutes, calls only
    messages: Any = None   # count, messages only

    @classmethod
    def for_call_seconds(cls, seconds: int) -> "Session":
        return cls("call", duration=Decimal(int(seconds)) / Decimal(60))


@dataclass(frozen=True)
class Earning:
    listener_amount: Decimal
    platform_amount: Decimal
    total_amount: Decimal

    @property
    def noop(self) -> bool:
        """Nothing to pay out, so nothing goes in the ledger."""
        return self.listener_amount <= 0

    def as_dict(self) -> dict:
        return {
            "listenerAmount": float(self.listener_amount),
            "platformAmount": float(self.platform_amount),
            "totalAmount": float(self.total_amount),
        }


NO_EARNING = Earning(ZERO, ZERO, ZERO)


def compute_earning(session, policy: PricingPolicy = DEFAULT_POLICY) -> Earning:
    if isinstance(session, Mapping):
        session = Session(session.get("type"), session.get("duration"), session.get("messages"))
    session_type = getattr(session, "type", None)
    if session_type not in SESSION_TYPES:
        raise InvalidSessionError(f"Session type must be one of {SESSION_TYPES}, got {session_type!r}.")

    if session_type == "call":
        minutes = _decimal(session.duration, "duration")
        if minutes < 0:
            raise InvalidSessionError("Call duration must not be negative.")
        if minutes == 0:
            return NO_EARNING
        listener = _money(minutes * policy.call_rate(minutes))
        total = _money(minutes * policy.avg_call_price)
    else:
        count = session.messages
        if isinstance(count, bool) or not isinstance(count, int):
            raise InvalidSessionError(f"Message count must be an integer, got {count!r}.")
        if count < 0:
            raise InvalidSessionError("Message count must not be negative.")
        if count == 0:
            return NO_EARNING
        listener = _money(policy.message_rate * count)
        total = _money(policy.avg_message_price * count)

    return Earning(listener_amount=listener, platform_amount=total - listener, total_amount=total)


# ─── LEDGER ────────────────────────────────────────────
def _as_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def call_duration_seconds(call: dict) -> Optional[int]:
    """Whole seconds the call lasted; clock skew never goes below zero."""
    if call.get("durationSeconds") is not None:
        return max(int(call["durationSeconds"]), 0)
    start, end = _as_datetime(call.get("startTime")), _as_datetime(call.get("endTime"))
    if start is None or end is None:
        return None
    return max(int((end - start).total_seconds() + 0.5), 0)


def _timestamp(value) -> str:
    parsed = _as_datetime(value)
    return parsed.astimezone(timezone.utc).isoformat() if parsed else now()


class EarningsLedger:
    def __init__(self, store, policy: PricingPolicy = DEFAULT_POLICY):
        self._store = store
        self.policy = policy

    async def on_call_updated(self, before: Optional[dict], after: Optional[dict]) -> Optional[Earning]:
        """Record the earning when a call has just moved to 'completed'."""
        if not after or after.get("status") != "completed":
            return None
        if before is not None and before.get("status") == "completed":
            return None
        return await self.record_call(after["id"], after)

    async def on_message_created(self, message: dict) -> Optional[Earning]:
        chat_id = message.get("chatId")
        if not chat_id:
            logger.error(f"Message {message.get('id')} has no chatId")
            return None
        return await self.record_message(chat_id, message["id"], message)

    async def record_call(self, call_id: str, call: dict) -> Optional[Earning]:
        listener_id = call.get("listenerId")
        seconds = call_duration_seconds(call)
        if not listener_id or seconds is None:
            logger.error(f"Call {call_id} is missing listenerId or timing data for earning calculation.")
            return None

        earning = compute_earning(Session.for_call_seconds(seconds), self.policy)
        if earning.noop:
            logger.info(f"Call {call_id} had no billable duration ({seconds}s). No earning record created.")
            await self._store.update(CALLS, call_id, {"durationSeconds": seconds, "earnings": 0})
            return None

        recorded = await self._record(
            event_id=call_id,
            source_id=call_id,
            session_type="call",
            listener_id=listener_id,
            counterparty=call,
            earning=earning,
            timestamp=_timestamp(call.get("endTime")),
            totals={"totalCalls": 1, "totalMinutes": round(seconds / 60, 2)},
            call_fields={"durationSeconds": seconds, "earnings": float(earning.listener_amount)},
        )
        if recorded:
            logger.info(f"Earnings for call {call_id} processed. Duration: {seconds}s, Listener: ₹{earning.listener_amount}")
        return earning if recorded else None

    async def record_message(self, chat_id: str, message_id: str, message: dict) -> Optional[Earning]:
        chat = await self._store.get(CHATS, chat_id)
        if not chat:
            logger.error(f"Chat session {chat_id} not found for message {message_id}.")
            return None
        listener_id = chat.get("listenerId")
        if not listener_id:
            logger.error(f"Chat session {chat_id} has no listenerId; message {message_id} not recorded.")
            return None
        if message.get("senderId") != chat.get("userId"):
            return None

        earning = compute_earning(Session("message", messages=1), self.policy)
        if earning.noop:
            return None
        recorded = await self._record(
            event_id=message_id,
            source_id=chat_id,
            session_type="message",
            listener_id=listener_id,
            counterparty=chat,
            earning=earning,
            timestamp=_timestamp(message.get("timestamp")),
            totals={"totalMessages": 1},
        )
        if recorded:
            logger.info(f"Earnings for message {message_id} processed. Listener: ₹{earning.listener_amount}")
        return earning if recorded else None

    async def _record(self, event_id, source_id, session_type, listener_id, counterparty,
                      earning: Earning, timestamp: str, totals: dict, call_fields: Optional[dict] = None) -> bool:
        record = {
            "listenerId": listener_id,
            "amount": float(earning.listener_amount),
            "sourceId": source_id,
            "type": session_type,
            "timestamp": timestamp,
            "userId": counterparty.get("userId"),
            "userName": counterparty.get("userName") or "A User",
        }
        platform_record = {
            "listenerId": listener_id,
            "sourceId": source_id,
            "type": session_type,
            "listenerEarning": float(earning.listener_amount),
            "adminEarning": float(earning.platform_amount),
            "total": float(earning.total_amount),
            "timestamp": timestamp,
        }

        async def apply(txn):
            if await txn.get(EARNINGS, event_id) is not None:
                return False
            await txn.create(EARNINGS, event_id, record)
            await txn.create(ADMIN_EARNINGS, event_id, platform_record)
            increments = {"totalEarnings": float(earning.listener_amount), **totals}
            if not await txn.update(LISTENERS, listener_id, increments=increments):
                raise NotFound(f"Listener {listener_id} not found.")
            if call_fields:
                await txn.update(CALLS, source_id, fields=call_fields)
            return True

        recorded = await self._store.run_transaction(apply)
        if not recorded:
            logger.warning(f"Duplicate {session_type} event {event_id} for listener {listener_id}; already in ledger")
        return recorded

    # ─── DASHBOARDS ────────────────────────────────────
    async def listener_dashboard(self, listener_id: str) -> dict:
        profile = await self._store.get(LISTENERS, listener_id)
        if not profile:
            raise NotFound("Listener profile not found")
        ledger = await self._store.find(EARNINGS, {"listenerId": listener_id}, limit=50, sort=("timestamp", -1))
        totals = {k: profile.get(k, 0) for k in ("totalEarnings", "totalCalls", "totalMinutes", "totalMessages")}
        return {"earnings": totals, "ledger": ledger}

    async def platform_summary(self) -> dict:
        records = await self._store.find(ADMIN_EARNINGS, {}, limit=None)
        today = datetime.now(timezone.utc).date().isoformat()

        def sums(rows):
            revenue = sum((Decimal(str(r["total"])) for r in rows), ZERO)
            profit = sum((Decimal(str(r["adminEarning"])) for r in rows), ZERO)
            paid = sum((Decimal(str(r["listenerEarning"])) for r in rows), ZERO)
            return revenue, profit, paid

        revenue, profit, paid = sums(records)
        daily = [r for r in records if str(r.get("timestamp", "")).startswith(today)]
        daily_revenue, daily_profit, _ = sums(daily)
        calls = [r for r in records if r["type"] == "call"]
        chats = {r["sourceId"] for r in records if r["type"] == "message"}
        return {
            "totalRevenue": float(_money(revenue)),
            "totalProfit": float(_money(profit)),
            "totalPaidToListeners": float(_money(paid)),
            "totalTransactions": len(records),
            "totalCalls": len(calls),
            "totalChats": len(chats),
            "dailyRevenue": float(_money(daily_revenue)),
            "dailyProfit": float(_money(daily_profit)),
            "dailyTransactions": len(daily),
            "averageProfitPercentage": round(float(profit / revenue * 100), 1) if revenue else 0,
            "activeListeners": await self._store.count(LISTENERS, {"status": "active"}),
            "date": today,
            "lastUpdated": now(),
        }
