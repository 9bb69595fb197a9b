"""Parsed view of the identity provider's IDX state.

Only the fields the engine inspects are modelled; :attr:`IdxResponse.raw_idx_state`
keeps the full payload so it can be persisted and re-parsed later.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Final, Iterable, Mapping, Tuple

# Top-level IDX keys that are never exposed as side-actions
_NON_ACTION_KEYS: Final[frozenset[str]] = frozenset(
    {"remediation", "successWithInteractionCode", "messages"}
)
_PATH_SEGMENT = re.compile(r"^(?P<key>[^\[\]]+)(?:\[(?P<index>\d+)\])?$")


@dataclass(frozen=True, slots=True)
class IdxMessage:
    message: str
    level: str = "INFO"
    i18n_key: str | None = None
    field: str | None = None


@dataclass(frozen=True, slots=True)
class IdxAuthenticator:
    id: str | None = None
    key: str | None = None
    type: str | None = None
    display_name: str | None = None
    methods: Tuple[Mapping[str, Any], ...] = ()
    contextual_data: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class IdxOption:
    label: str
    value: Any = None
    relates_to: IdxAuthenticator | None = None

    @property
    def form(self) -> Tuple[IdxInput, ...]:
        """Nested inputs when the option value is a form (authenticator choice)."""
        return self.value if isinstance(self.value, tuple) else ()


@dataclass(frozen=True, slots=True)
class IdxInput:
    name: str
    label: str | None = None
    type: str = "string"
    required: bool = False
    secret: bool = False
    visible: bool = True
    mutable: bool = True
    value: Any = None
    form: Tuple[IdxInput, ...] = ()
    options: Tuple[IdxOption, ...] = ()
    messages: Tuple[IdxMessage, ...] = ()


@dataclass(frozen=True, slots=True)
class IdxRemediation:
    name: str
    value: Tuple[IdxInput, ...] = ()
    href: str | None = None
    method: str = "POST"
    accepts: str | None = None
    relates_to: IdxAuthenticator | None = None
    idp: Mapping[str, Any] | None = None
    type: str | None = None

    def get_input(self, name: str) -> IdxInput | None:
        return next((i for i in self.value if i.name == name), None)


@dataclass(frozen=True, slots=True)
class IdxAction:
    name: str
    href: str
    method: str = "POST"
    accepts: str | None = None
    value: Tuple[IdxInput, ...] = ()


@dataclass(frozen=True, slots=True)
class IdxResponse:
    """Immutable snapshot of the conversation state."""

    needed_to_proceed: Tuple[IdxRemediation, ...] = ()
    actions: Mapping[str, IdxAction] = field(default_factory=dict)
    messages: Tuple[IdxMessage, ...] = ()
    interaction_code: str | None = None
    state_handle: str | None = None
    raw_idx_state: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """Nothing left to remediate and no code to exchange."""
        return not self.needed_to_proceed and not self.interaction_code

    def remediation_names(self) -> list[str]:
        return [r.name for r in self.needed_to_proceed]

    def get_remediation(self, name: str) -> IdxRemediation | None:
        return next((r for r in self.needed_to_proceed if r.name == name), None)


# --------------------------------------------------------------------------- #
# Parsing                                                                     #
# --------------------------------------------------------------------------- #
def _values(node: Any) -> list[Any]:
    """Unwrap ``{"type": "array", "value": [...]}`` collections."""
    if isinstance(node, Mapping):
        node = node.get("value")
    return list(node) if isinstance(node, (list, tuple)) else []


def _resolve_path(raw: Mapping[str, Any], path: str) -> Any:
    """Resolve the simple JSON paths IDX uses (``$.a.value[0]``)."""
    node: Any = raw
    for segment in path.removeprefix("$.").split("."):
        match = _PATH_SEGMENT.match(segment)
        if match is None or not isinstance(node, Mapping):
            return None
        node = node.get(match["key"])
        if match["index"] is not None:
            if not isinstance(node, list) or int(match["index"]) >= len(node):
                return None
            node = node[int(match["index"])]
    return node


def _parse_authenticator(raw: Mapping[str, Any], ref: Any) -> IdxAuthenticator | None:
    node = _resolve_path(raw, ref) if isinstance(ref, str) else ref
    if isinstance(node, Mapping) and isinstance(node.get("value"), Mapping):
        node = node["value"]
    if not isinstance(node, Mapping):
        return None
    return IdxAuthenticator(
        id=node.get("id"),
        key=node.get("key"),
        type=node.get("type"),
        display_name=node.get("displayName"),
        methods=tuple(node.get("methods") or ()),
        contextual_data=node.get("contextualData"),
    )


def _parse_messages(node: Any, field_name: str | None = None) -> Tuple[IdxMessage, ...]:
    out = []
    for item in _values(node):
        if not isinstance(item, Mapping) or "message" not in item:
            continue
        out.append(
            IdxMessage(
                message=str(item["message"]),
                level=str(item.get("class", "INFO")),
                i18n_key=(item.get("i18n") or {}).get("key"),
                field=field_name,
            )
        )
    return tuple(out)


def _parse_option(raw: Mapping[str, Any], item: Mapping[str, Any]) -> IdxOption:
    value = item.get("value")
    if isinstance(value, Mapping) and "form" in value:
        value = _parse_inputs(raw, _values(value["form"]))
    return IdxOption(
        label=str(item.get("label", "")),
        value=value,
        relates_to=_parse_authenticator(raw, item.get("relatesTo")),
    )


def _parse_input(raw: Mapping[str, Any], item: Mapping[str, Any]) -> IdxInput:
    name = str(item.get("name", ""))
    return IdxInput(
        name=name,
        label=item.get("label"),
        type=item.get("type", "string"),
        required=bool(item.get("required", False)),
        secret=bool(item.get("secret", False)),
        visible=item.get("visible", True) is not False,
        mutable=item.get("mutable", True) is not False,
        value=item.get("value"),
        form=_parse_inputs(raw, _values(item.get("form"))),
        options=tuple(
            _parse_option(raw, o) for o in item.get("options") or () if isinstance(o, Mapping)
        ),
        messages=_parse_messages(item.get("messages"), name),
    )


def _parse_inputs(raw: Mapping[str, Any], items: Iterable[Any]) -> Tuple[IdxInput, ...]:
    return tuple(_parse_input(raw, i) for i in items if isinstance(i, Mapping))


def _parse_remediation(raw: Mapping[str, Any], item: Mapping[str, Any]) -> IdxRemediation:
    return IdxRemediation(
        name=str(item.get("name", "")),
        value=_parse_inputs(raw, _values(item)),
        href=item.get("href"),
        method=item.get("method", "POST"),
        accepts=item.get("accepts"),
        relates_to=_parse_authenticator(raw, item.get("relatesTo")),
        idp=item.get("idp"),
        type=item.get("type"),
    )


def _is_action(node: Any) -> bool:
    return (
        isinstance(node, Mapping)
        and bool(node.get("href"))
        and "create-form" in (node.get("rel") or ())
    )


def _to_action(raw: Mapping[str, Any], name: str, node: Mapping[str, Any]) -> IdxAction:
    return IdxAction(
        name=name,
        href=node["href"],
        method=node.get("method", "POST"),
        accepts=node.get("accepts"),
        value=_parse_inputs(raw, _values(node)),
    )


def _parse_actions(raw: Mapping[str, Any]) -> dict[str, IdxAction]:
    actions: dict[str, IdxAction] = {}
    for key, node in raw.items():
        if key in _NON_ACTION_KEYS or not isinstance(node, Mapping):
            continue
        if _is_action(node):
            actions[key] = _to_action(raw, key, node)
            continue
        nested = node.get("value")
        if isinstance(nested, Mapping):
            for sub_key, sub_node in nested.items():
                if _is_action(sub_node):
                    name = f"{key}-{sub_key}"
                    actions[name] = _to_action(raw, name, sub_node)
    return actions


def _parse_interaction_code(raw: Mapping[str, Any]) -> str | None:
    for item in _values(raw.get("successWithInteractionCode")):
        if isinstance(item, Mapping) and item.get("name") == "interaction_code":
            return item.get("value")
    return None


def parse_idx_response(raw: Mapping[str, Any]) -> IdxResponse:
    """Build an :class:`IdxResponse` from a raw IDX JSON payload."""
    remediations = tuple(
        _parse_remediation(raw, item)
        for item in _values(raw.get("remediation"))
        if isinstance(item, Mapping)
    )
    messages = list(_parse_messages(raw.get("messages")))
    for remediation in remediations:
        for inp in remediation.value:
            messages.extend(inp.messages)
            for nested in inp.form:
                messages.extend(nested.messages)
    return IdxResponse(
        needed_to_proceed=remediations,
        actions=_parse_actions(raw),
        messages=tuple(messages),
        interaction_code=_parse_interaction_code(raw),
        state_handle=raw.get("stateHandle"),
        raw_idx_state=dict(raw),
    )
