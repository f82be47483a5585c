"""Transport-free preview state for one generation turn.

The whole buffer is re-scanned after every fragment because the opening or
closing fence may be split across fragments. Only the first complete
```html ... ``` pair is ever the artifact.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Optional


HTML_FENCE = re.compile(r"```html(.*?)```", re.DOTALL)


def extract_artifact(buffer: str) -> Optional[str]:
    match = HTML_FENCE.search(buffer)
    if match is None:
        return None
    return match.group(1).strip()


@dataclass(frozen=True)
class PreviewState:
    buffer: str = ""
    artifact: Optional[str] = None
    # What the preview pane shows: this turn's artifact once found, else the previous one
    displayed: Optional[str] = None

    def begin_turn(self) -> "PreviewState":
        return PreviewState(buffer="", artifact=None, displayed=self.displayed)

    def advance(self, fragment: str) -> "PreviewState":
        buffer = self.buffer + fragment
        artifact = extract_artifact(buffer)
        if artifact is None:
            return replace(self, buffer=buffer)
        return PreviewState(buffer=buffer, artifact=artifact, displayed=artifact)

    @property
    def complete(self) -> bool:
        return self.artifact is not None
