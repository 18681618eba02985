"""Transition rules parsed from a workflow definition."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from .exceptions import WorkflowConfigurationError

ADMIN_PERMISSION = "admin_all"


@dataclass(frozen=True)
class TransitionRule:
    """One ``from --action--> to`` edge of a workflow."""

    from_state: str
    to_state: str
    action: str
    label: str = ""
    permission: str = ""
    requires_comment: bool = False
    notifications: Tuple[Dict[str, Any], ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TransitionRule":
        if not isinstance(payload, Mapping):
            raise WorkflowConfigurationError("invalid workflow configuration: rule must be an object")
        values = {}
        for key in ("from", "to", "action"):
            value = payload.get(key)
            if not isinstance(value, str) or not value:
                raise WorkflowConfigurationError(
                    f"invalid workflow configuration: rule is missing '{key}'", rule=dict(payload)
                )
            values[key] = value
        notifications = payload.get("notifications") or ()
        return cls(
            from_state=values["from"],
            to_state=values["to"],
            action=values["action"],
            label=payload.get("label") or "",
            permission=payload.get("permission") or "",
            requires_comment=bool(payload.get("requires_comment", False)),
            notifications=tuple(notifications),
        )

    @property
    def display_label(self) -> str:
        return self.label or self.action

    def allows(self, permissions: Iterable[str]) -> bool:
        if not self.permission:
            return True
        granted = set(permissions)
        return self.permission in granted or ADMIN_PERMISSION in granted

    def as_action(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "label": self.display_label,
            "to_state": self.to_state,
            "requires_comment": self.requires_comment,
            "permission": self.permission,
        }


class RuleIndex:
    """Rules of one definition keyed by ``(from_state, action)``.

    When a definition repeats a pair the earliest rule in document order wins.
    """

    def __init__(self, rules: Sequence[TransitionRule]) -> None:
        self._rules = tuple(rules)
        self._by_key: Dict[Tuple[str, str], TransitionRule] = {}
        for rule in self._rules:
            self._by_key.setdefault((rule.from_state, rule.action), rule)

    @classmethod
    def parse(cls, document: Any) -> "RuleIndex":
        if document in (None, ""):
            return cls(())
        if not isinstance(document, list):
            raise WorkflowConfigurationError("invalid workflow configuration: transitions must be a list")
        return cls([TransitionRule.from_dict(item) for item in document])

    def match(self, state: str, action: str) -> Optional[TransitionRule]:
        return self._by_key.get((state, action))

    def leaving(self, state: str) -> List[TransitionRule]:
        return [rule for rule in self._rules if rule.from_state == state]

    def __iter__(self) -> Iterator[TransitionRule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)
