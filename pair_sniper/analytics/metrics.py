from __future__ import annotations

from dataclasses import asdict, dataclass

from pair_sniper.models import Outcome


@dataclass
class Summary:
    total_observed: int = 0
    duplicates: int = 0
    ineligible: int = 0
    total_executed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: Outcome) -> None:
        if outcome.status == "duplicate":
            self.duplicates += 1
        elif outcome.status == "ineligible":
            self.ineligible += 1
        elif outcome.status == "confirmed":
            self.total_executed += 1
            self.success += 1
        elif outcome.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
            if outcome.stage in ("sign", "submit", "inclusion"):
                self.total_executed += 1

    def as_dict(self) -> dict[str, int]:
        return asdict(self)
