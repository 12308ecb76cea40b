"""Per-contact response model over the 168 hours of a week.

Attempts are binned by local hour of week with a two-speed exponential
decay, turned into Beta posterior means pooled towards the user's global
prior, smoothed across neighbouring hours and days, masked by quiet hours
and preferred days, and the best spaced-out hours are recommended.
"""

import math
import random
from datetime import datetime
from zoneinfo import ZoneInfo

from messenger_outreach.models import (
    HOURS_PER_WEEK,
    ContactEvent,
    ContactWindow,
    HourBin,
    SegmentPrior,
    TimingConfig,
    TimingResult,
    utc_now,
)

DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
RECENCY_MU = 0.03


def hour_of_week(moment: datetime, timezone: str = "UTC") -> int:
    """Hour of week in ``timezone``, Sunday 00:00 being 0."""
    local = moment.astimezone(ZoneInfo(timezone))
    # isoweekday: Monday=1 .. Sunday=7
    return (local.isoweekday() % 7) * 24 + local.hour


def hour_of_week_label(value: int) -> tuple[str, int]:
    return DAY_NAMES[(value // 24) % 7], value % 24


def decay_weight(age_days: float, lambda_fast: float, lambda_slow: float) -> float:
    return 0.5 * math.exp(-lambda_fast * age_days) + 0.5 * math.exp(-lambda_slow * age_days)


def empty_bins() -> list[HourBin]:
    return [HourBin(hour_of_week=h) for h in range(HOURS_PER_WEEK)]


def aggregate_events(
    events: list[ContactEvent],
    config: TimingConfig,
    timezone: str = "UTC",
    now: datetime | None = None,
) -> list[HourBin]:
    """Decayed attempts and latency-discounted successes per hour of week.

    Only outbound events are attempts.
    """
    now = now or utc_now()
    bins = empty_bins()
    for event in events:
        if not event.is_outbound:
            continue
        age_days = (now - event.event_timestamp).total_seconds() / 86400
        weight = decay_weight(age_days, config.lambda_fast, config.lambda_slow)
        slot = bins[hour_of_week(event.event_timestamp, timezone)]
        slot.trials_count += weight
        if event.is_success:
            credit = event.success_weight
            latency = event.response_latency_hours
            if latency is not None:
                credit *= math.exp(-config.survival_gamma * latency)
            slot.success_count += weight * credit
    return bins


def compute_raw_probabilities(
    bins: list[HourBin],
    priors: dict[int, SegmentPrior] | None,
    config: TimingConfig,
) -> None:
    for slot in bins:
        alpha = config.alpha_prior
        beta = config.beta_prior
        prior = priors.get(slot.hour_of_week) if priors else None
        if prior is not None:
            alpha += config.hierarchical_kappa * prior.success_count
            beta += config.hierarchical_kappa * (prior.trials_count - prior.success_count)
        slot.raw_probability = (slot.success_count + alpha) / (slot.trials_count + alpha + beta)


def smooth(bins: list[HourBin]) -> None:
    """Blend each hour with its neighbours and with the same hour on other days.

    The week wraps around.
    """
    raw = [b.raw_probability for b in bins]
    n = HOURS_PER_WEEK
    for h in range(n):
        adjacent = (raw[(h - 1) % n] + raw[(h + 1) % n]) / 2
        adjacent_days = (raw[(h - 24) % n] + raw[(h + 24) % n]) / 2
        same_hour = [raw[day * 24 + h % 24] for day in range(7) if day * 24 + h % 24 != h]
        same_hour_avg = sum(same_hour) / len(same_hour)
        bins[h].smoothed_probability = (
            0.5 * raw[h] + 0.2 * adjacent + 0.2 * adjacent_days + 0.1 * same_hour_avg
        )


def apply_mask(
    bins: list[HourBin],
    quiet_hours_start: str | None = None,
    quiet_hours_end: str | None = None,
    preferred_days: list[int] | None = None,
) -> None:
    """Zero out quiet hours and days outside ``preferred_days``.

    Quiet hours may wrap past midnight; either filter applies on its own.
    """
    quiet = None
    if quiet_hours_start and quiet_hours_end:
        quiet = (int(quiet_hours_start.split(":")[0]), int(quiet_hours_end.split(":")[0]))

    for slot in bins:
        day, hour = divmod(slot.hour_of_week, 24)
        if quiet is not None:
            start, end = quiet
            if start < end:
                in_quiet = start <= hour < end
            else:
                in_quiet = hour >= start or hour < end
            if in_quiet:
                slot.smoothed_probability = 0.0
        if preferred_days and day not in preferred_days:
            slot.smoothed_probability = 0.0


def thompson_sample(bins: list[HourBin], config: TimingConfig, rng: random.Random) -> None:
    """Draw one sample per slot from its Beta posterior."""
    for slot in bins:
        alpha = slot.success_count + config.alpha_prior
        beta = max(slot.trials_count - slot.success_count, 0.0) + config.beta_prior
        slot.sample = rng.betavariate(alpha, beta)


def select_windows(bins: list[HourBin], config: TimingConfig, explore: bool = False) -> list[ContactWindow]:
    """Best hours, at least ``min_spacing_hours`` apart around the week.

    Masked hours are never recommended, even when exploring.
    """

    def score(slot: HourBin) -> float:
        if explore and slot.sample is not None:
            return slot.sample
        return slot.smoothed_probability

    windows: list[ContactWindow] = []
    for slot in sorted(bins, key=score, reverse=True):
        if len(windows) >= config.top_k_windows:
            break
        if slot.smoothed_probability <= 0:
            continue
        conflict = False
        for window in windows:
            diff = abs(window.hour_of_week - slot.hour_of_week)
            if min(diff, HOURS_PER_WEEK - diff) < config.min_spacing_hours:
                conflict = True
                break
        if conflict:
            continue
        dow, hour = hour_of_week_label(slot.hour_of_week)
        windows.append(
            ContactWindow(
                dow=dow,
                start=f"{hour:02d}:00",
                end=f"{(hour + 1) % 24:02d}:00",
                confidence=round(slot.smoothed_probability, 2),
                hour_of_week=slot.hour_of_week,
            )
        )
    return windows


def recency_score(last_positive_at: datetime | None, now: datetime | None = None, mu: float = RECENCY_MU) -> float:
    if last_positive_at is None:
        return 0.0
    days = ((now or utc_now()) - last_positive_at).total_seconds() / 86400
    return math.exp(-mu * days)


def composite_score(max_confidence: float, recency: float, priority: float, config: TimingConfig) -> float:
    return config.w1_confidence * max_confidence + config.w2_recency * recency + config.w3_priority * priority


def compute_best_contact_times(
    events: list[ContactEvent],
    config: TimingConfig,
    timezone: str = "UTC",
    priors: dict[int, SegmentPrior] | None = None,
    last_positive_at: datetime | None = None,
    priority: float = 0.5,
    explore: bool = False,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> TimingResult:
    """Run the whole model for one contact.

    With ``explore`` the ranking uses a Thompson sample instead of the
    posterior mean on an ``epsilon_exploration`` share of calls. A contact
    never reached, with no priors to borrow from, gets no windows.
    """
    now = now or utc_now()
    rng = rng or random.Random()

    bins = aggregate_events(events, config, timezone, now)
    compute_raw_probabilities(bins, priors, config)
    smooth(bins)
    apply_mask(bins, config.quiet_hours_start, config.quiet_hours_end, config.preferred_days)

    sampled = explore and rng.random() < config.epsilon_exploration
    if sampled:
        thompson_sample(bins, config, rng)

    windows = []
    if priors or any(b.trials_count > 0 for b in bins):
        windows = select_windows(bins, config, explore=sampled)

    max_confidence = max(b.smoothed_probability for b in bins)
    recency = recency_score(last_positive_at, now)
    return TimingResult(
        recommended_windows=windows,
        max_confidence=max_confidence,
        recency_score=recency,
        priority_score=priority,
        composite_score=composite_score(max_confidence, recency, priority, config),
        bins=bins,
    )
