"""Configuration for session synchronization, grading, and cohort analytics.

One dataclass covers all tunables so a deployment can ship a single JSON
document. Defaults match the values observed in production: a 600 ms save
debounce, an 800 ms echo-suppression window, 0.01 split tolerance, a
5-point improvement threshold, and a 3 minute rushed threshold.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field


@dataclass(frozen=True)
class ReadinessBar:
    """Minimum score and maximum critical issues for "ready" status."""

    min_score: int = 80
    max_critical_issues: int = 1


@dataclass
class SimulatorConfig:
    """Configuration for the simulator core.

    Attributes:
        db_path: SQLite database for progress documents and attempts.
        save_debounce_seconds: Quiet interval before a scheduled save fires.
        suppression_window_seconds: How long after a local edit incoming
            remote snapshots are ignored.
        write_timeout_seconds: Upper bound on a single remote write.
        split_tolerance: Absolute per-label tolerance when comparing splits.
        improvement_threshold: Score delta that counts as improvement.
        rushed_seconds: Attempts faster than this are flagged as rushed.
        readiness: The readiness bar used by the cohort view.
    """

    db_path: str = "./auditdrill.db"
    save_debounce_seconds: float = 0.6
    suppression_window_seconds: float = 0.8
    write_timeout_seconds: float = 10.0
    split_tolerance: float = 0.01
    improvement_threshold: float = 5.0
    rushed_seconds: float = 180.0
    readiness: ReadinessBar = field(default_factory=ReadinessBar)

    def __post_init__(self) -> None:
        if self.save_debounce_seconds < 0:
            raise ValueError("save_debounce_seconds must be >= 0")
        if self.suppression_window_seconds < 0:
            raise ValueError("suppression_window_seconds must be >= 0")
        if self.write_timeout_seconds <= 0:
            raise ValueError("write_timeout_seconds must be > 0")
        if self.split_tolerance < 0:
            raise ValueError("split_tolerance must be >= 0")

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, data: str) -> SimulatorConfig:
        """Deserialize from JSON string."""
        d = json.loads(data)
        if "readiness" in d:
            d["readiness"] = ReadinessBar(**d["readiness"])
        return cls(**d)
