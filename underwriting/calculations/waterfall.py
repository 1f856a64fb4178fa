"""
Waterfall Distribution Calculations

Allocates projected equity cash flows between LP and GP capital through a
tiered promote structure, optionally per equity share class.

Distribution order for every event (one per projection year; the final year
carries the sale proceeds):
1. Return of Capital - pro-rata by unreturned capital, or per class in
   priority order
2. Preferred Return - accrued annually, compounded on unreturned capital
   plus unpaid pref
3. GP Catch-up - GP takes catch_up_percent of the next dollars until its
   catch-up equals the first tier's GP split of all profit paid so far
4. Promote Tiers - each bounded tier absorbs the cash that brings the
   investors' IRR up to its hurdle; the open-ended tier takes the rest
5. Lookback - optional true-up of the GP promote at the terminal event

Negative cash flows are capital calls, funded pro-rata by equity.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from underwriting.calculations.irr import (
    IRRSolverConfig,
    calculate_irr,
    calculate_multiple,
    calculate_npv,
)
from underwriting.errors import NumericNonConvergenceError, UndefinedReason, ValidationError

logger = logging.getLogger(__name__)

SPLIT_TOLERANCE = 1e-6
# Dollar amounts below this are treated as fully paid
DOLLAR_TOLERANCE = 1e-6


# Structure


@dataclass(frozen=True)
class BoundedHurdle:
    """Tier that applies until the investors' IRR reaches `rate`."""

    rate: float

    @property
    def is_open_ended(self) -> bool:
        return False

    def to_value(self) -> Optional[float]:
        return self.rate


@dataclass(frozen=True)
class OpenEndedHurdle:
    """Final tier with no upper hurdle."""

    @property
    def is_open_ended(self) -> bool:
        return True

    def to_value(self) -> Optional[float]:
        return None


Hurdle = Union[BoundedHurdle, OpenEndedHurdle]


def parse_hurdle(value: Any) -> Hurdle:
    """
    Convert a serialized hurdle into its variant.

    None, "open", "infinity" and float('inf') all mean open-ended.
    """
    if isinstance(value, (BoundedHurdle, OpenEndedHurdle)):
        return value
    if value is None:
        return OpenEndedHurdle()
    if isinstance(value, str):
        if value.strip().lower() in ("open", "open_ended", "infinity", "inf"):
            return OpenEndedHurdle()
        value = float(value)
    if math.isinf(value):
        return OpenEndedHurdle()
    return BoundedHurdle(float(value))


@dataclass(frozen=True)
class PromoteTier:
    """One promote tier: the LP/GP split applied to cash below its hurdle."""

    hurdle: Hurdle
    lp_split: float
    gp_split: float

    def __post_init__(self):
        if not isinstance(self.hurdle, (BoundedHurdle, OpenEndedHurdle)):
            object.__setattr__(self, "hurdle", parse_hurdle(self.hurdle))
        if not 0 <= self.lp_split <= 1 or not 0 <= self.gp_split <= 1:
            raise ValidationError("Tier splits must be between 0 and 1", "promote_tiers")
        if abs(self.lp_split + self.gp_split - 1.0) > SPLIT_TOLERANCE:
            raise ValidationError(
                f"Tier splits must sum to 1 (got {self.lp_split} + {self.gp_split})",
                "promote_tiers",
            )
        if not self.hurdle.is_open_ended:
            if self.hurdle.rate < 0:
                raise ValidationError("Tier hurdle cannot be negative", "promote_tiers")
            if self.lp_split <= 0:
                raise ValidationError(
                    "A bounded tier must give the LP a share of cash", "promote_tiers"
                )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PromoteTier":
        return cls(
            hurdle=parse_hurdle(data.get("hurdle")),
            lp_split=float(data["lp_split"]),
            gp_split=float(data["gp_split"]),
        )

    def to_dict(self) -> Dict:
        return {
            "hurdle": self.hurdle.to_value(),
            "lp_split": self.lp_split,
            "gp_split": self.gp_split,
        }


@dataclass(frozen=True)
class ShareClass:
    """Equity share class used in per-class mode. Lower priority is paid first."""

    code: str
    priority: int
    equity_amount: float
    preferred_return: Optional[float] = None

    def __post_init__(self):
        if not self.code:
            raise ValidationError("Share class code is required", "share_classes")
        if self.equity_amount <= 0:
            raise ValidationError(
                f"Share class {self.code} equity must be greater than 0", "share_classes"
            )
        if self.preferred_return is not None and self.preferred_return < 0:
            raise ValidationError(
                f"Share class {self.code} preferred return cannot be negative",
                "share_classes",
            )

    def effective_preferred_return(self, deal_level: float) -> float:
        if self.preferred_return is None:
            return deal_level
        return self.preferred_return

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ShareClass":
        pref = data.get("preferred_return")
        return cls(
            code=str(data["code"]),
            priority=int(data["priority"]),
            equity_amount=float(data["equity_amount"]),
            preferred_return=float(pref) if pref is not None else None,
        )

    def to_dict(self) -> Dict:
        return {
            "code": self.code,
            "priority": self.priority,
            "equity_amount": self.equity_amount,
            "preferred_return": self.preferred_return,
        }


DEFAULT_PROMOTE_TIERS = (
    PromoteTier(BoundedHurdle(0.12), 0.80, 0.20),
    PromoteTier(BoundedHurdle(0.15), 0.70, 0.30),
    PromoteTier(BoundedHurdle(0.20), 0.60, 0.40),
    PromoteTier(OpenEndedHurdle(), 0.50, 0.50),
)


@dataclass(frozen=True)
class WaterfallStructure:
    """Capital structure and promote terms for a deal."""

    lp_equity: float
    gp_equity: float = 0.0
    preferred_return: float = 0.08
    promote_tiers: Tuple[PromoteTier, ...] = DEFAULT_PROMOTE_TIERS
    gp_catch_up: bool = True
    catch_up_percent: float = 1.0
    lookback: bool = False
    use_per_class_waterfall: bool = False
    share_classes: Tuple[ShareClass, ...] = ()

    def __post_init__(self):
        object.__setattr__(
            self,
            "promote_tiers",
            tuple(t if isinstance(t, PromoteTier) else PromoteTier.from_dict(t) for t in self.promote_tiers),
        )
        object.__setattr__(
            self,
            "share_classes",
            tuple(
                sorted(
                    (c if isinstance(c, ShareClass) else ShareClass.from_dict(c) for c in self.share_classes),
                    key=lambda c: c.priority,
                )
            ),
        )

        if self.lp_equity <= 0:
            raise ValidationError("LP equity must be greater than 0", "lp_equity")
        if self.gp_equity < 0:
            raise ValidationError("GP equity cannot be negative", "gp_equity")
        if self.preferred_return < 0:
            raise ValidationError("Preferred return cannot be negative", "preferred_return")

        self._validate_tiers()

        if self.gp_catch_up:
            if not 0 < self.catch_up_percent <= 1:
                raise ValidationError(
                    "catch_up_percent must be greater than 0 and at most 1",
                    "catch_up_percent",
                )
            if self.catch_up_percent <= self.promote_tiers[0].gp_split:
                raise ValidationError(
                    "catch_up_percent must exceed the first tier's GP split",
                    "catch_up_percent",
                )

        if self.use_per_class_waterfall:
            self._validate_share_classes()

    def _validate_tiers(self) -> None:
        tiers = self.promote_tiers
        if not tiers:
            raise ValidationError("At least one promote tier is required", "promote_tiers")

        open_ended = [i for i, t in enumerate(tiers) if t.hurdle.is_open_ended]
        if len(open_ended) != 1:
            raise ValidationError(
                "Exactly one promote tier must be open-ended", "promote_tiers"
            )
        if open_ended[0] != len(tiers) - 1:
            raise ValidationError(
                "The open-ended promote tier must be last", "promote_tiers"
            )

        rates = [t.hurdle.rate for t in tiers[:-1]]
        for lower, upper in zip(rates, rates[1:]):
            if upper <= lower:
                raise ValidationError(
                    f"Promote tier hurdles must be strictly ascending ({lower} then {upper})",
                    "promote_tiers",
                )

    def _validate_share_classes(self) -> None:
        classes = self.share_classes
        if not classes:
            raise ValidationError(
                "Per-class waterfall requires at least one share class", "share_classes"
            )
        if self.lookback:
            raise ValidationError(
                "Lookback is not supported together with the per-class waterfall",
                "lookback",
            )

        priorities = [c.priority for c in classes]
        if len(set(priorities)) != len(priorities):
            raise ValidationError("Share class priorities must be unique", "share_classes")
        codes = [c.code for c in classes]
        if len(set(codes)) != len(codes):
            raise ValidationError("Share class codes must be unique", "share_classes")

        class_total = sum(c.equity_amount for c in classes)
        if not math.isclose(class_total, self.total_equity, rel_tol=1e-9, abs_tol=0.01):
            raise ValidationError(
                f"Share class equity ({class_total:,.2f}) must equal LP + GP equity "
                f"({self.total_equity:,.2f})",
                "share_classes",
            )

    @property
    def total_equity(self) -> float:
        return self.lp_equity + self.gp_equity

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WaterfallStructure":
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValidationError(
                f"Unknown waterfall fields: {', '.join(sorted(unknown))}", sorted(unknown)[0]
            )

        values = dict(data)
        if "promote_tiers" in values and values["promote_tiers"] is not None:
            values["promote_tiers"] = tuple(
                PromoteTier.from_dict(t) for t in values["promote_tiers"]
            )
        else:
            values.pop("promote_tiers", None)
        values["share_classes"] = tuple(
            ShareClass.from_dict(c) for c in (values.get("share_classes") or ())
        )
        return cls(**values)

    def to_dict(self) -> Dict:
        return {
            "lp_equity": self.lp_equity,
            "gp_equity": self.gp_equity,
            "preferred_return": self.preferred_return,
            "promote_tiers": [t.to_dict() for t in self.promote_tiers],
            "gp_catch_up": self.gp_catch_up,
            "catch_up_percent": self.catch_up_percent,
            "lookback": self.lookback,
            "use_per_class_waterfall": self.use_per_class_waterfall,
            "share_classes": [c.to_dict() for c in self.share_classes],
        }


# Templates


def _tiers(*rows: Tuple[Optional[float], float, float]) -> Tuple[PromoteTier, ...]:
    return tuple(PromoteTier(parse_hurdle(h), lp, gp) for h, lp, gp in rows)


WATERFALL_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "CORE": {
        "name": "Core",
        "description": "Stabilized, low-leverage assets with a modest promote",
        "preferred_return": 0.06,
        "gp_catch_up": False,
        "catch_up_percent": 0.0,
        "promote_tiers": _tiers((0.06, 0.95, 0.05), (0.08, 0.90, 0.10), (None, 0.85, 0.15)),
    },
    "CORE_PLUS": {
        "name": "Core Plus",
        "description": "Light value-add with a 50/50 catch-up",
        "preferred_return": 0.07,
        "gp_catch_up": True,
        "catch_up_percent": 0.5,
        "promote_tiers": _tiers((0.10, 0.85, 0.15), (0.12, 0.80, 0.20), (None, 0.75, 0.25)),
    },
    "VALUE_ADD": {
        "name": "Value Add",
        "description": "Repositioning business plan with full catch-up",
        "preferred_return": 0.08,
        "gp_catch_up": True,
        "catch_up_percent": 1.0,
        "promote_tiers": _tiers(
            (0.12, 0.80, 0.20), (0.15, 0.70, 0.30), (0.18, 0.65, 0.35), (None, 0.50, 0.50)
        ),
    },
    "OPPORTUNISTIC": {
        "name": "Opportunistic",
        "description": "Development or heavy lease-up with a higher pref",
        "preferred_return": 0.10,
        "gp_catch_up": True,
        "catch_up_percent": 1.0,
        "promote_tiers": _tiers(
            (0.15, 0.80, 0.20), (0.20, 0.70, 0.30), (0.25, 0.60, 0.40), (None, 0.50, 0.50)
        ),
    },
    "FAMILY_OFFICE": {
        "name": "Family Office",
        "description": "Single split above the pref",
        "preferred_return": 0.08,
        "gp_catch_up": True,
        "catch_up_percent": 1.0,
        "promote_tiers": _tiers((None, 0.70, 0.30)),
    },
    "JOINT_VENTURE": {
        "name": "Joint Venture",
        "description": "Operating partner JV with promote starting at the pref",
        "preferred_return": 0.08,
        "gp_catch_up": True,
        "catch_up_percent": 1.0,
        "promote_tiers": _tiers(
            (0.08, 0.90, 0.10), (0.12, 0.80, 0.20), (0.15, 0.70, 0.30), (None, 0.60, 0.40)
        ),
    },
    "INSTITUTIONAL": {
        "name": "Institutional",
        "description": "Institutional LP terms with a partial catch-up",
        "preferred_return": 0.07,
        "gp_catch_up": True,
        "catch_up_percent": 0.5,
        "promote_tiers": _tiers(
            (0.10, 0.88, 0.12), (0.13, 0.82, 0.18), (0.16, 0.78, 0.22), (None, 0.75, 0.25)
        ),
    },
}


def structure_from_template(
    template: str, lp_equity: float, gp_equity: float = 0.0, **overrides
) -> WaterfallStructure:
    """
    Build a structure from one of WATERFALL_TEMPLATES.

    Raises:
        ValidationError: If the template is unknown
    """
    key = template.upper()
    if key not in WATERFALL_TEMPLATES:
        raise ValidationError(f"Unknown waterfall template: {template}", "template")

    terms = WATERFALL_TEMPLATES[key]
    values = {
        "lp_equity": lp_equity,
        "gp_equity": gp_equity,
        "preferred_return": terms["preferred_return"],
        "promote_tiers": terms["promote_tiers"],
        "gp_catch_up": terms["gp_catch_up"],
        "catch_up_percent": terms["catch_up_percent"],
    }
    values.update(overrides)
    return WaterfallStructure(**values)


def create_default_structure(
    total_equity: float, gp_co_invest: float = 0.10
) -> WaterfallStructure:
    """Default 8% pref, full catch-up structure with a GP co-invest share."""
    if not 0 <= gp_co_invest < 1:
        raise ValidationError("GP co-invest must be between 0 and 100%", "gp_co_invest")
    return WaterfallStructure(
        lp_equity=total_equity * (1 - gp_co_invest),
        gp_equity=total_equity * gp_co_invest,
    )


# Results


@dataclass(frozen=True)
class YearlyDistribution:
    """Distribution of one cash-flow event. Investor-side phase amounts include GP co-invest."""

    year: int
    cash_flow: float
    lp_share: float
    gp_share: float
    cumulative_lp: float
    cumulative_gp: float
    capital_returned: float
    pref_paid: float
    gp_catch_up: float
    lp_catch_up: float
    gp_promote: float
    lp_promote: float
    active_tier: Optional[int]
    lookback_adjustment: float = 0.0
    by_class: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        data = {
            "year": self.year,
            "cash_flow": round(self.cash_flow, 2),
            "lp_share": round(self.lp_share, 2),
            "gp_share": round(self.gp_share, 2),
            "cumulative_lp": round(self.cumulative_lp, 2),
            "cumulative_gp": round(self.cumulative_gp, 2),
            "capital_returned": round(self.capital_returned, 2),
            "pref_paid": round(self.pref_paid, 2),
            "gp_catch_up": round(self.gp_catch_up, 2),
            "lp_catch_up": round(self.lp_catch_up, 2),
            "gp_promote": round(self.gp_promote, 2),
            "lp_promote": round(self.lp_promote, 2),
            "active_tier": self.active_tier,
            "lookback_adjustment": round(self.lookback_adjustment, 2),
        }
        if self.by_class:
            data["by_class"] = {code: round(v, 2) for code, v in self.by_class.items()}
        return data


@dataclass(frozen=True)
class ClassDistribution:
    """Whole-life totals for one share class."""

    code: str
    priority: int
    equity_amount: float
    preferred_return: float
    capital_returned: float
    pref_paid: float
    promote: float
    total_distributed: float
    equity_multiple: Optional[float]

    def to_dict(self) -> Dict:
        return {
            "code": self.code,
            "priority": self.priority,
            "equity_amount": round(self.equity_amount, 2),
            "preferred_return": self.preferred_return,
            "capital_returned": round(self.capital_returned, 2),
            "pref_paid": round(self.pref_paid, 2),
            "promote": round(self.promote, 2),
            "total_distributed": round(self.total_distributed, 2),
            "equity_multiple": self.equity_multiple,
        }


@dataclass(frozen=True)
class WaterfallDistribution:
    """Result of one waterfall calculation run."""

    yearly_distributions: Tuple[YearlyDistribution, ...]
    lp_irr: Optional[float]
    gp_irr: Optional[float]
    lp_equity_multiple: Optional[float]
    gp_equity_multiple: Optional[float]
    lp_total_return: float
    gp_total_return: float
    total_promote: float
    lookback_adjustment: Optional[float]
    by_class: Optional[Dict[str, ClassDistribution]]
    structure: WaterfallStructure
    undefined: Dict[str, UndefinedReason] = field(default_factory=dict)

    @property
    def total_distributed(self) -> float:
        return self.lp_total_return + self.gp_total_return

    def to_dict(self) -> Dict:
        return {
            "yearly_distributions": [y.to_dict() for y in self.yearly_distributions],
            "summary": {
                "lp_irr": self.lp_irr,
                "gp_irr": self.gp_irr,
                "lp_equity_multiple": self.lp_equity_multiple,
                "gp_equity_multiple": self.gp_equity_multiple,
                "lp_total_return": round(self.lp_total_return, 2),
                "gp_total_return": round(self.gp_total_return, 2),
                "total_promote": round(self.total_promote, 2),
                "lookback_adjustment": (
                    round(self.lookback_adjustment, 2)
                    if self.lookback_adjustment is not None
                    else None
                ),
            },
            "by_class": (
                {code: c.to_dict() for code, c in self.by_class.items()}
                if self.by_class is not None
                else None
            ),
            "structure": self.structure.to_dict(),
            "undefined": {name: reason.value for name, reason in self.undefined.items()},
        }


# Engine


@dataclass
class _CapitalAccount:
    """Running balances for one capital holder (LP, GP co-invest or share class)."""

    key: str
    equity: float
    pref_rate: float
    weight: float
    priority: int = 0
    contributed: float = 0.0
    unreturned: float = 0.0
    pref_owed: float = 0.0
    capital_returned: float = 0.0
    pref_paid: float = 0.0
    residual: float = 0.0
    distributed: float = 0.0
    net: float = 0.0

    def __post_init__(self):
        self.contributed = self.equity
        self.unreturned = self.equity

    def accrue(self) -> None:
        self.pref_owed += (self.unreturned + self.pref_owed) * self.pref_rate

    def pay(self, amount: float) -> None:
        self.net += amount
        if amount > 0:
            self.distributed += amount


@dataclass
class _Event:
    """Mutable accumulator for one distribution event."""

    year: int
    cash_flow: float
    shares: Dict[str, float]
    capital_returned: float = 0.0
    pref_paid: float = 0.0
    gp_catch_up: float = 0.0
    lp_catch_up: float = 0.0
    gp_promote: float = 0.0
    lp_promote: float = 0.0
    active_tier: Optional[int] = None
    lookback_adjustment: float = 0.0

    @property
    def investor_total(self) -> float:
        return sum(self.shares.values())

    @property
    def gp_carry(self) -> float:
        return self.gp_catch_up + self.gp_promote


def catch_up_required(
    pref_paid: float,
    gp_caught_up: float,
    lp_caught_up: float,
    gp_target_split: float,
    catch_up_percent: float,
) -> float:
    """
    Cash needed in the catch-up phase to bring GP catch-up to its target.

    Target: GP catch-up = gp_target_split * (pref paid + all catch-up cash).
    """
    shortfall = gp_target_split * (pref_paid + gp_caught_up + lp_caught_up) - gp_caught_up
    return max(0.0, shortfall / (catch_up_percent - gp_target_split))


def split_through_tiers(
    cash: float,
    tiers: Sequence[PromoteTier],
    flows: List[float],
    period: int,
    start_tier: int = 0,
) -> Tuple[float, float, int]:
    """
    Split `cash` across promote tiers by hurdle capacity.

    A bounded tier's capacity is the cash whose investor share brings the
    NPV of investor flows at the tier hurdle to zero, so one event can span
    several tiers.

    Args:
        cash: Cash left after capital, pref and catch-up
        tiers: Validated promote tiers
        flows: Investor flows at t = 0..N before this split
        period: Index in `flows` of the event being split
        start_tier: First tier to consider

    Returns:
        (investor share, GP share, index of the last tier used)
    """
    investor = 0.0
    gp = 0.0
    index = start_tier
    last_used = start_tier
    remaining = cash

    while remaining > 0:
        tier = tiers[index]
        last_used = index

        if tier.hurdle.is_open_ended:
            investor += remaining * tier.lp_split
            gp += remaining * tier.gp_split
            break

        rate = tier.hurdle.rate
        trial = list(flows)
        trial[period] += investor
        needed = -calculate_npv(trial, rate) * (1 + rate) ** period
        if needed <= DOLLAR_TOLERANCE:
            index += 1
            continue

        capacity = needed / tier.lp_split
        take = min(remaining, capacity)
        investor += take * tier.lp_split
        gp += take * tier.gp_split
        remaining -= take

        if take < capacity:
            break
        index += 1

    return investor, gp, last_used


class WaterfallEngine:
    """
    Runs the distribution state machine for one structure.

    The engine holds no per-run state, so one instance can serve concurrent
    calculations.
    """

    def __init__(self, structure: WaterfallStructure, solver: Optional[IRRSolverConfig] = None):
        self.structure = structure
        self.solver = solver

    def _open_accounts(self) -> List[_CapitalAccount]:
        s = self.structure
        total = s.total_equity

        if s.use_per_class_waterfall:
            return [
                _CapitalAccount(
                    key=c.code,
                    equity=c.equity_amount,
                    pref_rate=c.effective_preferred_return(s.preferred_return),
                    weight=c.equity_amount / total,
                    priority=c.priority,
                )
                for c in s.share_classes
            ]

        accounts = [
            _CapitalAccount("lp", s.lp_equity, s.preferred_return, s.lp_equity / total)
        ]
        if s.gp_equity > 0:
            accounts.append(
                _CapitalAccount("gp", s.gp_equity, s.preferred_return, s.gp_equity / total)
            )
        return accounts

    def _call_capital(self, event: _Event, accounts: List[_CapitalAccount]) -> None:
        for account in accounts:
            amount = -event.cash_flow * account.weight
            account.contributed += amount
            account.unreturned += amount
            account.pay(-amount)
            event.shares[account.key] -= amount

    def _pay_pari_passu(self, remaining: float, event: _Event, accounts: List[_CapitalAccount]) -> float:
        needed = sum(a.unreturned for a in accounts)
        if needed > 0 and remaining > 0:
            paid = min(remaining, needed)
            for account in accounts:
                share = paid * account.unreturned / needed
                account.unreturned -= share
                account.capital_returned += share
                account.pay(share)
                event.shares[account.key] += share
            event.capital_returned += paid
            remaining -= paid

        owed = sum(a.pref_owed for a in accounts)
        if owed > 0 and remaining > 0:
            paid = min(remaining, owed)
            for account in accounts:
                share = paid * account.pref_owed / owed
                account.pref_owed -= share
                account.pref_paid += share
                account.pay(share)
                event.shares[account.key] += share
            event.pref_paid += paid
            remaining -= paid

        return remaining

    def _pay_by_priority(self, remaining: float, event: _Event, accounts: List[_CapitalAccount]) -> float:
        for account in accounts:
            if remaining <= 0:
                break

            capital = min(remaining, account.unreturned)
            if capital > 0:
                account.unreturned -= capital
                account.capital_returned += capital
                account.pay(capital)
                event.shares[account.key] += capital
                event.capital_returned += capital
                remaining -= capital

            pref = min(remaining, account.pref_owed)
            if pref > 0:
                account.pref_owed -= pref
                account.pref_paid += pref
                account.pay(pref)
                event.shares[account.key] += pref
                event.pref_paid += pref
                remaining -= pref

        return remaining

    def _pay_residual(self, amount: float, event: _Event, accounts: List[_CapitalAccount]) -> None:
        for account in accounts:
            share = amount * account.weight
            account.residual += share
            account.pay(share)
            event.shares[account.key] += share

    def _lookback_target(self, base_flows: List[float], residuals: List[Tuple[int, float]]) -> float:
        """
        GP tier promote with every event's residual re-split at its own date.

        Capacity is measured against whole-life investor flows, so later
        capital calls and distributions count toward each hurdle.
        """
        flows = list(base_flows)
        gp = 0.0
        for period, cash in residuals:
            investor, tier_gp, _ = split_through_tiers(cash, self.structure.promote_tiers, flows, period)
            flows[period] += investor
            gp += tier_gp
        return gp

    def calculate(self, cash_flows: Sequence[float]) -> WaterfallDistribution:
        """
        Distribute `cash_flows` (one per year, year 1 first) through the structure.

        Raises:
            ValidationError: If there are no cash flows
        """
        if len(cash_flows) == 0:
            raise ValidationError("Cash flows must be a non-empty sequence", "cash_flows")

        s = self.structure
        per_class = s.use_per_class_waterfall
        accounts = self._open_accounts()
        total_equity = sum(a.equity for a in accounts)
        first_split = s.promote_tiers[0].gp_split

        logger.info(
            "Waterfall calculation: %d events, LP %.2f, GP %.2f, pref %.4f, %d tiers, per_class=%s",
            len(cash_flows),
            s.lp_equity,
            s.gp_equity,
            s.preferred_return,
            len(s.promote_tiers),
            per_class,
        )

        investor_flows = [-total_equity]
        base_flows = [-total_equity]
        residuals: List[Tuple[int, float]] = []
        gp_caught_up = 0.0
        lp_caught_up = 0.0
        tier_floor = 0
        events: List[_Event] = []

        for index, cash_flow in enumerate(cash_flows):
            event = _Event(
                year=index + 1,
                cash_flow=float(cash_flow),
                shares={a.key: 0.0 for a in accounts},
            )
            for account in accounts:
                account.accrue()

            if cash_flow < 0:
                self._call_capital(event, accounts)
            elif cash_flow > 0:
                if per_class:
                    remaining = self._pay_by_priority(float(cash_flow), event, accounts)
                else:
                    remaining = self._pay_pari_passu(float(cash_flow), event, accounts)

                if remaining > 0 and s.gp_catch_up:
                    pref_paid = sum(a.pref_paid for a in accounts)
                    cash = min(
                        remaining,
                        catch_up_required(
                            pref_paid, gp_caught_up, lp_caught_up, first_split, s.catch_up_percent
                        ),
                    )
                    if cash > 0:
                        gp_cash = cash * s.catch_up_percent
                        event.gp_catch_up = gp_cash
                        event.lp_catch_up = cash - gp_cash
                        gp_caught_up += gp_cash
                        lp_caught_up += cash - gp_cash
                        self._pay_residual(cash - gp_cash, event, accounts)
                        remaining -= cash

                if remaining > 0:
                    residuals.append((event.year, remaining))
                    investor, gp, tier_index = split_through_tiers(
                        remaining,
                        s.promote_tiers,
                        investor_flows + [event.investor_total],
                        event.year,
                        tier_floor if s.lookback else 0,
                    )
                    event.lp_promote = investor
                    event.gp_promote = gp
                    event.active_tier = tier_index
                    self._pay_residual(investor, event, accounts)
                    if s.lookback:
                        tier_floor = max(tier_floor, tier_index)

            base_flows.append(event.investor_total - event.lp_promote)
            investor_flows.append(event.investor_total)
            events.append(event)

            logger.debug(
                "Year %d: cash %.2f, capital %.2f, pref %.2f, catch-up %.2f/%.2f, promote %.2f/%.2f, tier %s",
                event.year,
                event.cash_flow,
                event.capital_returned,
                event.pref_paid,
                event.lp_catch_up,
                event.gp_catch_up,
                event.lp_promote,
                event.gp_promote,
                event.active_tier,
            )

        lookback_adjustment = None
        if s.lookback:
            actual = sum(e.gp_promote for e in events)
            target = self._lookback_target(base_flows, residuals)
            lookback_adjustment = target - actual
            final = events[-1]
            final.lookback_adjustment = lookback_adjustment
            self._pay_residual(-lookback_adjustment, final, accounts)
            logger.info(
                "Lookback: target GP promote %.2f, actual %.2f, adjustment %.2f",
                target,
                actual,
                lookback_adjustment,
            )

        return self._summarize(events, accounts, lookback_adjustment)

    def _summarize(
        self,
        events: List[_Event],
        accounts: List[_CapitalAccount],
        lookback_adjustment: Optional[float],
    ) -> WaterfallDistribution:
        s = self.structure
        per_class = s.use_per_class_waterfall
        undefined: Dict[str, UndefinedReason] = {}

        yearly = []
        lp_flows = []
        gp_flows = []
        cumulative_lp = 0.0
        cumulative_gp = 0.0

        for event in events:
            if per_class:
                lp_share = event.investor_total
                gp_share = event.gp_carry + event.lookback_adjustment
            else:
                lp_share = event.shares["lp"]
                gp_share = (
                    event.shares.get("gp", 0.0) + event.gp_carry + event.lookback_adjustment
                )
            cumulative_lp += lp_share
            cumulative_gp += gp_share
            lp_flows.append(lp_share)
            gp_flows.append(gp_share)

            yearly.append(
                YearlyDistribution(
                    year=event.year,
                    cash_flow=event.cash_flow,
                    lp_share=lp_share,
                    gp_share=gp_share,
                    cumulative_lp=cumulative_lp,
                    cumulative_gp=cumulative_gp,
                    capital_returned=event.capital_returned,
                    pref_paid=event.pref_paid,
                    gp_catch_up=event.gp_catch_up,
                    lp_catch_up=event.lp_catch_up,
                    gp_promote=event.gp_promote,
                    lp_promote=event.lp_promote,
                    active_tier=event.active_tier,
                    lookback_adjustment=event.lookback_adjustment,
                    by_class=dict(event.shares) if per_class else {},
                )
            )

        if per_class:
            lp_invested = sum(a.equity for a in accounts)
            gp_invested = 0.0
        else:
            lp_invested = s.lp_equity
            gp_invested = s.gp_equity

        lp_irr, lp_multiple = self._returns("lp", lp_invested, lp_flows, undefined)
        gp_irr, gp_multiple = self._returns("gp", gp_invested, gp_flows, undefined)

        by_class = None
        if per_class:
            by_class = {
                a.key: ClassDistribution(
                    code=a.key,
                    priority=a.priority,
                    equity_amount=a.equity,
                    preferred_return=a.pref_rate,
                    capital_returned=a.capital_returned,
                    pref_paid=a.pref_paid,
                    promote=a.residual,
                    total_distributed=a.net,
                    equity_multiple=a.distributed / a.contributed,
                )
                for a in accounts
            }

        total_promote = sum(e.gp_carry for e in events) + (lookback_adjustment or 0.0)
        result = WaterfallDistribution(
            yearly_distributions=tuple(yearly),
            lp_irr=lp_irr,
            gp_irr=gp_irr,
            lp_equity_multiple=lp_multiple,
            gp_equity_multiple=gp_multiple,
            lp_total_return=cumulative_lp,
            gp_total_return=cumulative_gp,
            total_promote=total_promote,
            lookback_adjustment=lookback_adjustment,
            by_class=by_class,
            structure=s,
            undefined=undefined,
        )

        logger.info(
            "Waterfall complete: LP %.2f (IRR %s), GP %.2f (IRR %s), promote %.2f",
            result.lp_total_return,
            f"{lp_irr:.4f}" if lp_irr is not None else "undefined",
            result.gp_total_return,
            f"{gp_irr:.4f}" if gp_irr is not None else "undefined",
            total_promote,
        )
        return result

    def _returns(
        self,
        side: str,
        invested: float,
        flows: List[float],
        undefined: Dict[str, UndefinedReason],
    ) -> Tuple[Optional[float], Optional[float]]:
        if invested <= 0:
            undefined[f"{side}_irr"] = UndefinedReason.NO_GP_CAPITAL
            undefined[f"{side}_equity_multiple"] = UndefinedReason.NO_GP_CAPITAL
            return None, None

        vector = [-invested] + flows
        multiple = calculate_multiple(vector)
        try:
            irr = calculate_irr(vector, solver=self.solver)
        except NumericNonConvergenceError as e:
            logger.debug("%s IRR undefined: %s", side.upper(), e)
            undefined[f"{side}_irr"] = e.reason
            irr = None
        return irr, multiple


def calculate_waterfall(
    cash_flows: Sequence[float],
    structure: WaterfallStructure,
    solver: Optional[IRRSolverConfig] = None,
) -> WaterfallDistribution:
    """
    Calculate LP/GP distributions for yearly equity cash flows.

    Args:
        cash_flows: Distributable cash by year (final year includes sale
            proceeds); negative values are capital calls
        structure: Validated waterfall structure
        solver: IRR bounds and tolerances

    Returns:
        WaterfallDistribution with yearly rows and whole-life summary
    """
    return WaterfallEngine(structure, solver).calculate(cash_flows)
