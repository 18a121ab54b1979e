"""Pick the retention tier to run for a dataset today."""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable

from zbr.models import Dataset, Label, TierChoice

# Fetches every tier label currently held for a dataset.
HistorySource = Callable[[Dataset], Iterable[Label]]


def select_tier(
    month_labels: Iterable[Label],
    week_labels: Iterable[Label],
    now: datetime,
) -> TierChoice:
    """Return the single tier to run.

    A tier that has never run is forced regardless of the calendar, so a
    dataset acquires month, then week history even when backups start
    mid-cycle. Otherwise: the 1st of the month is month, Sunday is week,
    any other day is day.
    """
    newest_month = max(month_labels, default=None)
    newest_week = max(week_labels, default=None)

    if newest_month is None:
        tier, forced = "month", True
    elif newest_week is None:
        tier, forced = "week", True
    elif now.day == 1:
        tier, forced = "month", False
    elif now.weekday() == 6:
        tier, forced = "week", False
    else:
        tier, forced = "day", False

    return TierChoice(tier=tier, label=Label.new(tier, now), forced=forced)


class RetentionScheduler:
    def __init__(self, history: HistorySource):
        self.history = history

    def select(
        self,
        dataset: Dataset,
        now: datetime,
        exclude_day: str | None = None,
    ) -> TierChoice:
        """Select today's tier for dataset.

        exclude_day (YYYYmmdd) hides that day's labels, which reproduces the
        decision a run made before it created them.
        """
        labels = [
            label for label in self.history(dataset)
            if exclude_day is None or label.day != exclude_day
        ]
        return select_tier(
            [label for label in labels if label.tier == "month"],
            [label for label in labels if label.tier == "week"],
            now,
        )

    def labels_on(self, dataset: Dataset, day: str) -> list[Label]:
        """Labels of any tier dated day (YYYYmmdd)."""
        return [label for label in self.history(dataset) if label.day == day]
