"""
Processing scheduler for periodic queue runs.

The host (cron, a CMS pseudo-cron, a systemd timer) may invoke the runner
far more often than the queue should be processed. The scheduler uses a
check-on-invocation pattern: each run checks if processing is due based on
persisted state in queue_schedule_state.json.
"""

import json
import os
import time
from dataclasses import dataclass, asdict
from typing import Optional

from shared.log import create_logger
_, log_debug, log_info, _, _ = create_logger("Scheduler")


@dataclass
class ScheduleState:
    """Persisted state for queue processing scheduling."""
    last_run_time: float = 0.0          # time.time() of last run
    last_processed: int = 0             # emails processed by last run
    last_sent: int = 0                  # emails sent by last run
    last_failed: int = 0                # attempts failed in last run
    last_maintenance_time: float = 0.0  # last cleanup/stale-claim sweep
    run_count: int = 0                  # total runs


class ProcessingScheduler:
    """Manages queue processing scheduling via persisted state.

    NOT a timer/thread. On each invocation, call is_due() to check if a
    batch should be processed based on the interval and last run time.
    """

    STATE_FILE = 'queue_schedule_state.json'

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.state_path = os.path.join(data_dir, self.STATE_FILE)

    def load_state(self) -> ScheduleState:
        """Load schedule state from disk."""
        try:
            if os.path.exists(self.state_path):
                with open(self.state_path, 'r') as f:
                    data = json.load(f)
                return ScheduleState(**data)
        except (json.JSONDecodeError, TypeError, KeyError) as e:
            log_debug(f"Failed to load schedule state, using defaults: {e}")
        return ScheduleState()

    def save_state(self, state: ScheduleState) -> None:
        """Save schedule state to disk atomically."""
        tmp_path = self.state_path + '.tmp'
        try:
            with open(tmp_path, 'w') as f:
                json.dump(asdict(state), f, indent=2)
            os.replace(tmp_path, self.state_path)
        except OSError as e:
            log_debug(f"Failed to save schedule state: {e}")

    def is_due(self, interval_minutes: float, now: Optional[float] = None) -> bool:
        """Check if queue processing is due.

        Args:
            interval_minutes: Minimum minutes between runs
            now: Current time (default: time.time()). For testing.

        Returns:
            True if a batch should be processed now.
        """
        if now is None:
            now = time.time()

        state = self.load_state()
        elapsed = now - state.last_run_time
        return elapsed >= interval_minutes * 60

    def is_maintenance_due(self, now: Optional[float] = None) -> bool:
        """Check if the daily cleanup/stale-claim sweep should run."""
        if now is None:
            now = time.time()

        state = self.load_state()
        return now - state.last_maintenance_time >= 86400

    def record_run(self, result, now: Optional[float] = None) -> None:
        """Record a completed processing run.

        Args:
            result: BatchResult or DrainResult from the processor
            now: Run time (default: time.time())
        """
        state = self.load_state()
        state.last_run_time = now if now is not None else time.time()
        state.last_processed = result.processed
        state.last_sent = result.sent
        state.last_failed = result.failed
        state.run_count += 1
        self.save_state(state)

    def record_maintenance(self, now: Optional[float] = None) -> None:
        state = self.load_state()
        state.last_maintenance_time = now if now is not None else time.time()
        self.save_state(state)
        log_info("Queue maintenance recorded")
