"""Drink vocabulary and price statistics.

Pure functions over (name, price) observations. ``find_espresso_price`` is the
one definition of "the" espresso price and is reused by every caller that
derives an espresso price from a drinks list.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Sequence

if TYPE_CHECKING:
    from models import Cafe, DrinkPrice

ESPRESSO = "Espresso"

# Fixed price bands used when a sample is too small or degenerate
FALLBACK_BANDS = (2.0, 2.5, 3.0)

MIN_STATS_SAMPLES = 4


@dataclass(frozen=True)
class DrinkPriceStats:
    min_price: float
    max_price: float
    q1: float
    median: float
    q3: float

    def category(self, price: float) -> int:
        return price_category(self, price)


def normalize_drink_name(raw: str) -> str:
    """Map a free-text menu entry to its canonical drink category.

    Rules are checked in priority order, most specific first. Names that match
    no rule are title-cased token by token.
    """
    lower = raw.lower().strip()

    if "espresso" in lower:
        if "double" in lower or "doppio" in lower:
            return "Doppio"
        return ESPRESSO
    if "doppio" in lower:
        return "Doppio"
    if "cappuccino" in lower:
        return "Cappuccino"
    if "latte macchiato" in lower:
        return "Latte Macchiato"
    if "flat white" in lower:
        return "Flat White"
    if "americano" in lower:
        return "Americano"
    if "cortado" in lower:
        return "Cortado"
    if "macchiato" in lower and "latte" not in lower:
        return "Macchiato"
    if "filter" in lower:
        return "Filter Coffee"
    if "latte" in lower:
        return "Latte"

    return " ".join(token[:1].upper() + token[1:].lower() for token in raw.split())


def find_espresso_price(drinks: Sequence["DrinkPrice"]) -> float | None:
    """Return the espresso price of a drinks list, or None.

    Exact name "espresso" wins; otherwise the first name containing "espresso"
    that is not a double/doppio.
    """
    for drink in drinks:
        if drink.name.lower() == "espresso":
            return drink.price

    for drink in drinks:
        name = drink.name.lower()
        if "espresso" in name and "double" not in name and "doppio" not in name:
            return drink.price

    return None


def find_drink_price(drinks: Sequence["DrinkPrice"], drink_name: str) -> float | None:
    """Exact (case-insensitive) match first, then first substring match."""
    target = drink_name.lower()

    for drink in drinks:
        if drink.name.lower() == target:
            return drink.price

    for drink in drinks:
        if target in drink.name.lower():
            return drink.price

    return None


def calculate_price_stats(prices: Iterable[float]) -> DrinkPriceStats | None:
    """Index-based quartiles over a price sample.

    Returns None for fewer than four samples or a degenerate distribution;
    callers fall back to ``fallback_price_category`` then.
    """
    ordered = sorted(prices)
    count = len(ordered)
    if count < MIN_STATS_SAMPLES:
        return None

    min_price = ordered[0]
    max_price = ordered[-1]
    if min_price >= max_price:
        return None

    q1 = ordered[count // 4]
    median = ordered[count // 2]
    q3 = ordered[(count * 3) // 4]
    if q1 >= q3:
        return None

    return DrinkPriceStats(
        min_price=min_price,
        max_price=max_price,
        q1=q1,
        median=median,
        q3=q3,
    )


def price_category(stats: DrinkPriceStats, price: float) -> int:
    """0 = cheap, 1 = medium, 2 = expensive, 3 = very expensive."""
    if price < stats.q1:
        return 0
    if price < stats.median:
        return 1
    if price < stats.q3:
        return 2
    return 3


def fallback_price_category(price: float) -> int:
    cheap, medium, expensive = FALLBACK_BANDS
    if price < cheap:
        return 0
    if price < medium:
        return 1
    if price < expensive:
        return 2
    return 3


def categorize_price(price: float, stats: DrinkPriceStats | None) -> int:
    if stats is not None:
        return price_category(stats, price)
    return fallback_price_category(price)


def available_drinks(cafes: Iterable["Cafe"]) -> list[str]:
    """All drink names across every price history, Espresso first."""
    names: set[str] = set()
    for cafe in cafes:
        for record in cafe.price_history:
            for drink in record.effective_drinks:
                names.add(drink.name)

    ordered = sorted(names)
    if ESPRESSO in ordered:
        ordered.remove(ESPRESSO)
        ordered.insert(0, ESPRESSO)

    return ordered or [ESPRESSO]


def drink_price_samples(cafes: Iterable["Cafe"]) -> dict[str, list[float]]:
    """Latest observed prices per cafe, grouped by normalized drink name."""
    samples: dict[str, list[float]] = {}
    for cafe in cafes:
        latest = cafe.latest_price_record
        if latest is None:
            continue
        for drink in latest.effective_drinks:
            samples.setdefault(normalize_drink_name(drink.name), []).append(drink.price)
    return samples


def price_stats_by_drink(cafes: Iterable["Cafe"]) -> dict[str, DrinkPriceStats | None]:
    return {
        name: calculate_price_stats(prices)
        for name, prices in drink_price_samples(cafes).items()
    }
