"""Schema documents: validated entity-type descriptions that drive rendering."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


Issue = Dict[str, Any]


class FieldRole(str, Enum):
    TITLE = "title"
    SUBTITLE = "subtitle"
    DESCRIPTION = "description"
    STATUS = "status"
    BADGE = "badge"
    RATING = "rating"
    CODE = "code"
    AVATAR = "avatar"
    IMAGE = "image"
    ICON = "icon"
    COLOR = "color"
    PERSON = "person"
    DUEDATE = "duedate"


_ROLE_ALIASES = {
    "due-date": FieldRole.DUEDATE,
    "due_date": FieldRole.DUEDATE,
    "dueDate": FieldRole.DUEDATE,
}


class ComponentKind(str, Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    NUMBER = "number"
    CURRENCY = "currency"
    PERCENTAGE = "percentage"
    DATE = "date"
    DATETIME = "datetime"
    CHECKBOX = "checkbox"
    SWITCH = "switch"
    SELECT = "select"
    RADIO = "radio"
    CHECKBOX_LIST = "checkbox-list"
    TOGGLE_GROUP = "toggle-group"
    PICKER = "picker"
    TAG_INPUT = "tag-input"
    RATING = "rating"
    COLOR_PICKER = "color-picker"
    ICON_PICKER = "icon-picker"
    AVATAR = "avatar"
    IMAGE = "image"
    FILE = "file"
    JSON = "json"
    CODE = "code"
    PASSWORD = "password"
    LIST_INPUT = "list-input"


# Components whose stored value is a single comparable scalar.
SCALAR_COMPONENTS = {
    ComponentKind.TEXT,
    ComponentKind.TEXTAREA,
    ComponentKind.EMAIL,
    ComponentKind.PHONE,
    ComponentKind.URL,
    ComponentKind.NUMBER,
    ComponentKind.CURRENCY,
    ComponentKind.PERCENTAGE,
    ComponentKind.DATE,
    ComponentKind.DATETIME,
    ComponentKind.CHECKBOX,
    ComponentKind.SWITCH,
    ComponentKind.RATING,
    ComponentKind.CODE,
}

CUSTOM_BUTTON_ACTIONS = {"navigate", "open-url", "open-dialog"}


@dataclass
class SchemaValidationError(Exception):
    schema_id: str | None
    issues: List[Issue]

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        first = self.issues[0]["message"] if self.issues else "invalid schema"
        return f"schema {self.schema_id!r}: {first} ({len(self.issues)} issue(s))"


@dataclass(frozen=True)
class RepeatingConfig:
    target_schema: str | None = None
    relation_type_id: str | None = None


@dataclass(frozen=True)
class Section:
    id: str
    title: str | None = None
    is_repeating_section: bool = False
    repeating_config: RepeatingConfig | None = None

    @property
    def is_relation_based(self) -> bool:
        cfg = self.repeating_config
        return bool(cfg and cfg.target_schema and cfg.relation_type_id)


@dataclass(frozen=True)
class Field:
    id: str
    name: str
    label: str
    component: ComponentKind
    role: FieldRole | None = None
    section_id: str | None = None
    options: tuple = ()
    hidden: bool = False
    order: int | None = None

    @property
    def key(self) -> str:
        return self.name or self.id

    @property
    def is_scalar(self) -> bool:
        return self.component in SCALAR_COMPONENTS


@dataclass(frozen=True)
class CustomButton:
    id: str
    label: str
    action: str
    target: str | None = None
    icon: str | None = None


@dataclass(frozen=True)
class Schema:
    id: str
    plural_name: str
    singular_name: str
    icon: str | None = None
    fields: tuple = ()
    sections: tuple = ()
    status_group: tuple = ()
    allow_hierarchical_parent: bool = False
    is_not_company_based: bool = False
    can_select_multi_companies: bool = False
    allow_assign_to: bool = False
    allow_data_assigned_to: bool = False
    custom_buttons: tuple = ()

    @property
    def is_company_based(self) -> bool:
        return not (self.is_not_company_based or self.id == "companies")

    @property
    def allows_assignment(self) -> bool:
        return self.allow_assign_to or self.allow_data_assigned_to

    def fields_by_role(self, role: FieldRole | str) -> list[Field]:
        wanted = parse_role(role)
        if wanted is None:
            return []
        return [f for f in self.fields if f.role == wanted]

    def has_role(self, role: FieldRole | str) -> bool:
        return bool(self.fields_by_role(role))

    def ordered_fields(self) -> list[Field]:
        """Fields in layout order: by `order`, unordered ones after in declaration order."""
        ordered = sorted((f for f in self.fields if f.order is not None), key=lambda f: f.order)
        return ordered + [f for f in self.fields if f.order is None]

    def field(self, field_id: str) -> Field | None:
        for f in self.fields:
            if f.id == field_id or f.name == field_id:
                return f
        return None

    def repeating_sections(self) -> list[Section]:
        return [s for s in self.sections if s.is_repeating_section]

    def repeating_field_ids(self) -> set[str]:
        section_ids = {s.id for s in self.repeating_sections()}
        return {f.id for f in self.fields if f.section_id in section_ids}


def parse_role(value: Any) -> FieldRole | None:
    if isinstance(value, FieldRole):
        return value
    if not isinstance(value, str) or not value:
        return None
    if value in _ROLE_ALIASES:
        return _ROLE_ALIASES[value]
    try:
        return FieldRole(value.lower())
    except ValueError:
        return None


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _pick(raw: dict, *keys: str, default=None):
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def _flag(raw: dict, *keys: str) -> bool:
    return _pick(raw, *keys, default=False) is True


def _parse_field(raw: Any, path: str, issues: List[Issue]) -> Field | None:
    if not isinstance(raw, dict):
        issues.append(_issue("FIELD_INVALID", "field must be an object", path))
        return None
    field_id = raw.get("id")
    if not isinstance(field_id, str) or not field_id:
        issues.append(_issue("FIELD_ID_MISSING", "field id is required", f"{path}.id"))
        return None
    name = raw.get("name") if isinstance(raw.get("name"), str) and raw.get("name") else field_id

    component_raw = raw.get("component")
    try:
        component = ComponentKind(component_raw)
    except ValueError:
        issues.append(
            _issue(
                "FIELD_COMPONENT_UNKNOWN",
                f"unknown component: {component_raw!r}",
                f"{path}.component",
                {"field_id": field_id},
            )
        )
        return None

    role = None
    role_raw = raw.get("role")
    if role_raw not in (None, ""):
        role = parse_role(role_raw)
        if role is None:
            issues.append(
                _issue(
                    "FIELD_ROLE_UNKNOWN",
                    f"unknown role: {role_raw!r}",
                    f"{path}.role",
                    {"field_id": field_id},
                )
            )
            return None

    order = raw.get("order")
    if order is not None and (not isinstance(order, int) or isinstance(order, bool)):
        issues.append(_issue("FIELD_ORDER_INVALID", "order must be an integer", f"{path}.order"))
        order = None

    options = raw.get("options")
    label = raw.get("label")
    return Field(
        id=field_id,
        name=name,
        label=label if isinstance(label, str) and label else name,
        component=component,
        role=role,
        section_id=_pick(raw, "sectionId", "section_id"),
        options=tuple(options) if isinstance(options, list) else (),
        hidden=_flag(raw, "hidden"),
        order=order,
    )


def _parse_section(raw: Any, path: str, issues: List[Issue]) -> Section | None:
    if not isinstance(raw, dict) or not isinstance(raw.get("id"), str):
        issues.append(_issue("SECTION_INVALID", "section must be an object with an id", path))
        return None
    cfg_raw = _pick(raw, "repeatingConfig", "repeating_config")
    cfg = None
    if isinstance(cfg_raw, dict):
        cfg = RepeatingConfig(
            target_schema=_pick(cfg_raw, "targetSchema", "target_schema"),
            relation_type_id=_pick(cfg_raw, "relationTypeId", "relation_type_id"),
        )
    return Section(
        id=raw["id"],
        title=raw.get("title"),
        is_repeating_section=_flag(raw, "isRepeatingSection", "is_repeating_section"),
        repeating_config=cfg,
    )


def _parse_button(raw: Any, path: str, issues: List[Issue]) -> CustomButton | None:
    if not isinstance(raw, dict):
        issues.append(_issue("BUTTON_INVALID", "custom button must be an object", path))
        return None
    action = _pick(raw, "action", "type")
    if action not in CUSTOM_BUTTON_ACTIONS:
        issues.append(_issue("BUTTON_ACTION_UNKNOWN", f"unknown button action: {action!r}", f"{path}.action"))
        return None
    button_id = raw.get("id") or raw.get("label") or f"button-{path}"
    return CustomButton(
        id=str(button_id),
        label=str(raw.get("label") or button_id),
        action=action,
        target=_pick(raw, "target", "url", "route", "dialogId"),
        icon=raw.get("icon"),
    )


def load_schema(raw: Any) -> Schema:
    """Validate a backend schema document and return a Schema.

    Every problem is collected before raising, so one load reports the whole
    document. Unknown roles and components are errors.
    """
    issues: List[Issue] = []
    if not isinstance(raw, dict):
        raise SchemaValidationError(None, [_issue("SCHEMA_INVALID", "schema must be an object", "$")])

    schema_id = raw.get("id")
    if not isinstance(schema_id, str) or not schema_id:
        issues.append(_issue("SCHEMA_ID_MISSING", "schema id is required", "id"))
        schema_id = None

    fields: list[Field] = []
    seen_ids: set[str] = set()
    raw_fields = raw.get("fields") if isinstance(raw.get("fields"), list) else []
    if raw.get("fields") is not None and not isinstance(raw.get("fields"), list):
        issues.append(_issue("SCHEMA_FIELDS_INVALID", "fields must be a list", "fields"))
    for idx, item in enumerate(raw_fields):
        parsed = _parse_field(item, f"fields[{idx}]", issues)
        if parsed is None:
            continue
        if parsed.id in seen_ids:
            issues.append(_issue("FIELD_ID_DUPLICATE", f"duplicate field id: {parsed.id}", f"fields[{idx}].id"))
            continue
        seen_ids.add(parsed.id)
        fields.append(parsed)

    sections: list[Section] = []
    for idx, item in enumerate(raw.get("sections") or []):
        parsed = _parse_section(item, f"sections[{idx}]", issues)
        if parsed is not None:
            sections.append(parsed)

    buttons: list[CustomButton] = []
    for idx, item in enumerate(_pick(raw, "customButtons", "custom_buttons", default=[]) or []):
        parsed = _parse_button(item, f"customButtons[{idx}]", issues)
        if parsed is not None:
            buttons.append(parsed)

    status_group = _pick(raw, "statusGroup", "status_group", default=[])
    if not isinstance(status_group, list):
        issues.append(_issue("STATUS_GROUP_INVALID", "statusGroup must be a list", "statusGroup"))
        status_group = []

    if issues:
        raise SchemaValidationError(schema_id, issues)

    plural = _pick(raw, "pluralName", "plural_name", default=schema_id)
    return Schema(
        id=schema_id,
        plural_name=plural,
        singular_name=_pick(raw, "singularName", "singular_name", default="Entity"),
        icon=raw.get("icon"),
        fields=tuple(fields),
        sections=tuple(sections),
        status_group=tuple(status_group),
        allow_hierarchical_parent=_flag(raw, "allowHierarchicalParent", "allow_hierarchical_parent"),
        is_not_company_based=_flag(raw, "isNotCompanyBased", "is_not_company_based"),
        can_select_multi_companies=_flag(raw, "canSelectMultiCompanies", "can_select_multi_companies"),
        allow_assign_to=_flag(raw, "allowAssignTo", "allow_assign_to"),
        allow_data_assigned_to=_flag(raw, "allowDataAssignedTo", "allow_data_assigned_to"),
        custom_buttons=tuple(buttons),
    )
