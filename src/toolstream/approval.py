"""Per-tool approval policy.

Policy rules:
- When the session-wide bypass ("yolo") is on, every tool runs without asking.
- Otherwise a tool runs without asking only if it was approved with
  ``always`` earlier.
- Everything else asks.

Stores are shared by all conversations of a host application and may be
read and written concurrently; the last writer wins.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class ApprovalPolicy(Enum):
    ASK = "ask"
    ALWAYS = "always"
    YOLO = "yolo"


class ApprovalDecision(Enum):
    ONCE = "once"
    ALWAYS = "always"
    DENY = "deny"


class ApprovalPolicyStore(ABC):

    @abstractmethod
    def get(self, tool_name: str) -> ApprovalPolicy:
        ...

    @abstractmethod
    def set(self, tool_name: str, policy: ApprovalPolicy) -> None:
        ...

    @abstractmethod
    def set_yolo(self, enabled: bool) -> None:
        ...

    @abstractmethod
    def reset(self, tool_name: str | None = None) -> None:
        """Forget ``always`` for one tool, or for all tools."""

    def record_decision(self, tool_name: str, decision: ApprovalDecision) -> None:
        """Apply the persistent side of a user's decision.

        Any explicit decision turns the bypass off; ``always`` also
        remembers the tool.
        """
        self.set_yolo(False)
        if decision is ApprovalDecision.ALWAYS:
            self.set(tool_name, ApprovalPolicy.ALWAYS)


class InMemoryPolicyStore(ApprovalPolicyStore):

    def __init__(self, always: list[str] | None = None, yolo: bool = False):
        self._lock = threading.Lock()
        self._always: set[str] = set(always or [])
        self._yolo = yolo

    @property
    def yolo(self) -> bool:
        return self._yolo

    def get(self, tool_name: str) -> ApprovalPolicy:
        with self._lock:
            if self._yolo:
                return ApprovalPolicy.YOLO
            if tool_name in self._always:
                return ApprovalPolicy.ALWAYS
            return ApprovalPolicy.ASK

    def set(self, tool_name: str, policy: ApprovalPolicy) -> None:
        if policy is ApprovalPolicy.YOLO:
            self.set_yolo(True)
            return
        with self._lock:
            if policy is ApprovalPolicy.ALWAYS:
                self._always.add(tool_name)
            else:
                self._always.discard(tool_name)
            self._changed()

    def set_yolo(self, enabled: bool) -> None:
        with self._lock:
            self._yolo = bool(enabled)
            self._changed()

    def reset(self, tool_name: str | None = None) -> None:
        with self._lock:
            if tool_name is None:
                self._always.clear()
            else:
                self._always.discard(tool_name)
            self._changed()

    def _changed(self) -> None:
        """Hook called with the lock held after every mutation."""


class JsonFilePolicyStore(InMemoryPolicyStore):
    """Policy store persisted to a JSON file.

    File shape: ``{"yolo": false, "always": ["tool_a", ...]}``. A missing
    or unreadable file starts from the defaults (ask for everything).
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        always, yolo = self._load()
        super().__init__(always=always, yolo=yolo)

    def _load(self) -> tuple[list[str], bool]:
        if not self.path.exists():
            return [], False
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read approval policies from {self.path}: {e}")
            return [], False
        if not isinstance(data, dict):
            logger.error(f"Ignoring approval policies in {self.path}: not a JSON object")
            return [], False
        always = data.get("always", [])
        if not isinstance(always, list):
            always = []
        always = [n for n in always if isinstance(n, str)]
        return always, bool(data.get("yolo", False))

    def _changed(self) -> None:
        payload = {"yolo": self._yolo, "always": sorted(self._always)}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)
