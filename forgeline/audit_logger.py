from __future__ import annotations

from pathlib import Path

from forgeline.event_bus import EventBus, FeatureEvent


class AuditLogger:
    """
    Subscribes to an EventBus and writes every event to an
    append-only JSONL file.
    """

    def __init__(self, file_path: Path, event_bus: EventBus):
        self.file_path = Path(file_path)
        self.event_bus = event_bus

        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self.event_bus.subscribe(self.log_event)

    def log_event(self, event: FeatureEvent) -> None:
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")

    def close(self) -> None:
        self.event_bus.unsubscribe(self.log_event)
