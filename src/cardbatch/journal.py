import json
import time
from pathlib import Path
from typing import Optional


class BatchJournal:
    """Append-only JSONL record of batch events."""

    def __init__(self, path: Optional[Path]):
        self.path = Path(path) if path else None

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def event(self, step, batch=None, status='ok', **kw):
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        rec = {'ts': time.time(), 'step': step, 'batch': batch, 'status': status}
        rec.update(kw)
        with open(self.path, 'a', encoding='utf-8') as f:
            f.write(json.dumps(rec, default=str) + '\n')
