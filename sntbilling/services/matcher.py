"""Plot, period and category resolution for payment rows.

Plot resolution is an ordered list of strategies. Each strategy returns a
PlotMatch tagged with its MatchType, or None; the first match wins. A
strategy that finds several candidate plots returns None: leaving a payment
unmatched for manual review is preferred over attributing it to the wrong
plot.
"""

import logging
import re
from datetime import date
from typing import NamedTuple, Sequence

from sntbilling.models.accrual import AccrualCategory
from sntbilling.models.billing_period import BillingPeriod
from sntbilling.models.payment import MatchType
from sntbilling.models.plot import Plot
from sntbilling.services.import_rows import ImportRow
from sntbilling.services.parsers import normalize_name, normalize_phone, normalize_text

logger = logging.getLogger(__name__)


class PlotMatch(NamedTuple):
    """Successful plot resolution."""

    plot_id: int
    match_type: MatchType


def _unique(plots: list[Plot], match_type: MatchType) -> PlotMatch | None:
    ids = {plot.id for plot in plots}
    if len(ids) == 1:
        return PlotMatch(plot_id=ids.pop(), match_type=match_type)
    if len(ids) > 1:
        logger.debug("Ambiguous %s match: plots %s", match_type.value, sorted(ids))
    return None


class MatchStrategy:
    """Base class of plot matching strategies."""

    match_type: MatchType

    def match(self, row: ImportRow, plots: Sequence[Plot]) -> PlotMatch | None:
        raise NotImplementedError


class PlotNumberStrategy(MatchStrategy):
    """Exact plot number from the free-text plot reference.

    Understands "12", "Участок 12", "уч. 12", "№12", "3/12", "3-12" and
    "Линия 3, участок 12" (street 3, plot 12).
    """

    match_type = MatchType.PLOT_NUMBER

    _STREET_AND_NUMBER = (
        re.compile(r"^\s*([\wа-яё]+)\s*[/\-]\s*([\wа-яё]+)\s*$", re.IGNORECASE),
        re.compile(
            r"(?:линия|улица|ул\.?)\s*([\wа-яё]+)\W+(?:участок|уч\.?)\s*№?\s*([\wа-яё]+)",
            re.IGNORECASE,
        ),
    )
    _PREFIX = re.compile(r"^(?:участок|уч\.?|plot|№|#)\s*№?\s*", re.IGNORECASE)

    def match(self, row: ImportRow, plots: Sequence[Plot]) -> PlotMatch | None:
        ref = normalize_text(row.plot_ref).lower()
        if not ref:
            return None

        for pattern in self._STREET_AND_NUMBER:
            found = pattern.search(ref)
            if found:
                street, number = found.group(1), found.group(2)
                candidates = [
                    p
                    for p in plots
                    if p.street.lower() == street and p.number.lower() == number
                ]
                result = _unique(candidates, self.match_type)
                if result:
                    return result

        number = self._PREFIX.sub("", ref).strip()
        if not number:
            return None
        candidates = [p for p in plots if p.number.lower() == number]
        return _unique(candidates, self.match_type)


class PhoneStrategy(MatchStrategy):
    """Owner phone, compared on digits only (last 10 digits)."""

    match_type = MatchType.PHONE

    @staticmethod
    def _key(value: str | None) -> str:
        digits = normalize_phone(value)
        return digits[-10:] if len(digits) >= 10 else ""

    def match(self, row: ImportRow, plots: Sequence[Plot]) -> PlotMatch | None:
        key = self._key(row.payer_phone)
        if not key:
            return None
        candidates = [
            p
            for p in plots
            if self._key(p.owner_phone) == key
            or (p.person is not None and self._key(p.person.phone) == key)
        ]
        return _unique(candidates, self.match_type)


class FullNameStrategy(MatchStrategy):
    """Owner full name: normalized exact match first, then unique substring."""

    match_type = MatchType.FULL_NAME

    @staticmethod
    def _names(plot: Plot) -> list[str]:
        names = [normalize_name(plot.owner_name)]
        if plot.person is not None:
            names.append(normalize_name(plot.person.full_name))
        return [name for name in names if name]

    def match(self, row: ImportRow, plots: Sequence[Plot]) -> PlotMatch | None:
        payer = normalize_name(row.payer_name)
        if len(payer) < 3:
            return None

        exact = [p for p in plots if payer in self._names(p)]
        if exact:
            return _unique(exact, self.match_type)

        partial = [p for p in plots if any(payer in name or name in payer for name in self._names(p))]
        return _unique(partial, self.match_type)


DEFAULT_STRATEGIES: tuple[MatchStrategy, ...] = (
    PlotNumberStrategy(),
    PhoneStrategy(),
    FullNameStrategy(),
)


class PlotMatcher:
    """Runs strategies in priority order against a registry snapshot."""

    def __init__(self, plots: Sequence[Plot], strategies: Sequence[MatchStrategy] = DEFAULT_STRATEGIES):
        self.plots = list(plots)
        self.strategies = tuple(strategies)

    def match(self, row: ImportRow) -> PlotMatch | None:
        for strategy in self.strategies:
            result = strategy.match(row, self.plots)
            if result is not None:
                return result
        return None


class PeriodResolver:
    """Finds the billing period a date belongs to.

    The data model allows overlapping periods; the narrowest range containing
    the date wins, ties broken by the latest start date and then the lowest id.
    """

    def __init__(self, periods: Sequence[BillingPeriod]):
        self.periods = list(periods)

    def resolve(self, day: date) -> BillingPeriod | None:
        candidates = [p for p in self.periods if p.contains(day)]
        if not candidates:
            return None
        candidates.sort(key=lambda p: (p.length_days, -p.start_date.toordinal(), p.id))
        return candidates[0]


class CategoryResolver:
    """Debt category of a payment: explicit value, comment keyword, default."""

    KEYWORDS: tuple[tuple[re.Pattern, AccrualCategory], ...] = (
        (re.compile(r"электр|свет|квт|electr", re.IGNORECASE), AccrualCategory.ELECTRIC),
        (re.compile(r"целев|target", re.IGNORECASE), AccrualCategory.TARGET),
        (re.compile(r"членск|membership", re.IGNORECASE), AccrualCategory.MEMBERSHIP),
    )

    def __init__(self, default: AccrualCategory | str | None = AccrualCategory.MEMBERSHIP):
        self.default = AccrualCategory.normalize(default)

    def resolve(self, row: ImportRow) -> AccrualCategory | None:
        if row.category is not None:
            return row.category
        comment = row.comment or ""
        for pattern, category in self.KEYWORDS:
            if pattern.search(comment):
                return category
        return self.default


__all__ = [
    "PlotMatch",
    "MatchStrategy",
    "PlotNumberStrategy",
    "PhoneStrategy",
    "FullNameStrategy",
    "DEFAULT_STRATEGIES",
    "PlotMatcher",
    "PeriodResolver",
    "CategoryResolver",
]
