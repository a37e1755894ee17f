from __future__ import annotations

NOW = 1_700_000_000_000_000_000
HOUR = 3_600 * 10 ** 9


def make_payload(title="Buy milk", description="2% milk, 1 gallon", due_date=None):
    return {
        "title": title,
        "description": description,
        "due_date": NOW + HOUR if due_date is None else due_date,
    }
