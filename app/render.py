from __future__ import annotations

from typing import Any

from jinja2 import DictLoader, Undefined
from jinja2.sandbox import ImmutableSandboxedEnvironment

_ALLOWED_FILTERS = {
    "default",
    "escape",
    "e",
    "join",
    "length",
    "lower",
    "round",
    "string",
    "title",
    "trim",
    "upper",
}

_ALLOWED_TESTS = {
    "defined",
    "undefined",
    "none",
    "equalto",
    "mapping",
    "sequence",
    "string",
}


_CARD = """
<article class="mv-card" data-id="{{ card.id }}">
  {% if card.avatar is defined %}<span class="mv-avatar">{{ card.avatar.initials }}</span>{% endif %}
  <h3 class="mv-title">{{ card.title }}</h3>
  {% if card.subtitle %}<p class="mv-subtitle">{{ card.subtitle }}</p>{% endif %}
  {% if card.code %}<code class="mv-code">{{ card.code }}</code>{% endif %}
  {% if card.description %}<p class="mv-description">{{ card.description }}</p>{% endif %}
  {% if card.status %}<ul class="mv-status">{% for chip in card.status %}<li{% if chip.color %} data-color="{{ chip.color }}"{% endif %}>{{ chip.label }}</li>{% endfor %}</ul>{% endif %}
  {% if card.badges %}<ul class="mv-badges">{% for badge in card.badges %}<li>{{ badge.label }}</li>{% endfor %}</ul>{% endif %}
  {% if card.rating is defined %}<span class="mv-rating">{{ card.rating | round(1) }} / 5</span>{% endif %}
  {% if card.due_date %}<span class="mv-due{% if card.due_date.overdue %} mv-overdue{% endif %}">{{ card.due_date.label }}: {{ card.due_date.value }} ({{ card.due_date.days_left }} days)</span>{% endif %}
  {% if card.person %}<span class="mv-person">{{ card.person.label }}</span>{% endif %}
  {% if card.buttons %}<div class="mv-buttons">{% for button in card.buttons %}<button data-action="{{ button.action }}" data-target="{{ button.target | default('', true) }}">{{ button.label }}</button>{% endfor %}</div>{% endif %}
</article>
"""

_TABLE = """
<table class="mv-table">
  <thead><tr>{% for col in columns %}<th data-column="{{ col.id }}"{% if col.sortable %} data-sortable="true"{% endif %}>{{ col.label }}</th>{% endfor %}</tr></thead>
  <tbody>
  {% for row in rows %}
    <tr data-id="{{ row.id }}">
    {% for col in columns %}{% set cell = row.cells[col.id] %}
      <td>
      {%- if col.kind == "actions" -%}
        {% for action in cell %}<button data-action="{{ action.type }}">{{ action.type | title }}</button>{% endfor %}
      {%- elif col.kind == "field" -%}
        {{ cell.text }}
      {%- elif col.kind == "metadata" -%}
        {% if cell %}<span title="{{ cell.tooltip }}">{{ cell.text }}</span>{% endif %}
      {%- else -%}
        {{ cell if cell is not none else "" }}
      {%- endif -%}
      </td>
    {% endfor %}
    </tr>
  {% endfor %}
  </tbody>
</table>
"""

_ITEMS = """
{%- if mode == "table" -%}
  {% with columns=view.columns, rows=items %}{% include "table.html" %}{% endwith %}
{%- else -%}
  <div class="mv-{{ mode }}">{% for card in items %}{% include "card.html" %}{% endfor %}</div>
{%- endif -%}
"""

_NODE = """
<li class="mv-node" data-id="{{ node.id }}"{% if node.id in expanded %} data-expanded="true"{% endif %}>
  <span class="mv-node-title">{{ node.title }}</span>
  {% for action in node.actions %}<button data-action="{{ action.type }}">{{ action.type }}</button>{% endfor %}
  {% if node.children %}<ul>{% for child in node.children %}{% with node=child %}{% include "node.html" %}{% endwith %}{% endfor %}</ul>{% endif %}
</li>
"""

_PAGE = """
<section class="mv-page" data-schema="{{ view.schema_id }}" data-view="{{ view.view_mode }}">
  <header><h2>{{ view.title }}</h2>{% if view.can_create %}<button data-action="create">New {{ view.singular_name }}</button>{% endif %}</header>
  {% if view.error %}<div class="mv-error" role="alert">{{ view.error.message }}</div>{% endif %}
  {% if view.unresolved_reason %}<div class="mv-pending">{{ view.unresolved_reason }}</div>{% endif %}
  {% if view.tree is not none %}
    {% set expanded = view.tree.expanded_ids %}
    <ul class="mv-tree" data-expand="{{ view.tree.expand_token }}" data-collapse="{{ view.tree.collapse_token }}">
    {% for node in view.tree.roots %}{% include "node.html" %}{% endfor %}
    </ul>
  {% elif view.groups is not none %}
    {% for group in view.groups %}
      <details open class="mv-group" data-company="{{ group.key }}"><summary>{{ group.key }} ({{ group["items"] | length }})</summary>
      {% with mode=view.view_mode, items=group["items"] %}{% include "items.html" %}{% endwith %}
      </details>
    {% endfor %}
    {% if view.ungrouped %}
      <details open class="mv-group" data-company="ungrouped"><summary>Ungrouped ({{ view.ungrouped | length }})</summary>
      {% with mode=view.view_mode, items=view.ungrouped %}{% include "items.html" %}{% endwith %}
      </details>
    {% endif %}
  {% else %}
    {% with mode=view.view_mode, items=view["items"] %}{% include "items.html" %}{% endwith %}
  {% endif %}
  {% if view.empty %}<p class="mv-empty">No {{ view.title | lower }} found.</p>{% endif %}
  <footer class="mv-pagination">Page {{ view.pagination.page }} of {{ view.pagination.total_pages }} &middot; {{ view.pagination.total_items }} items</footer>
</section>
"""

_TEMPLATES = {
    "card.html": _CARD,
    "table.html": _TABLE,
    "items.html": _ITEMS,
    "node.html": _NODE,
    "page.html": _PAGE,
}


class _LockedSandbox(ImmutableSandboxedEnvironment):
    def is_safe_callable(self, obj) -> bool:
        return False


def _env() -> _LockedSandbox:
    env = _LockedSandbox(loader=DictLoader(_TEMPLATES), autoescape=True, undefined=Undefined)
    env.filters = {key: val for key, val in env.filters.items() if key in _ALLOWED_FILTERS}
    env.tests = {key: val for key, val in env.tests.items() if key in _ALLOWED_TESTS}
    return env


_ENV = _env()


def _sanitize_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(key): _sanitize_value(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(val) for val in value]
    return str(value)


def render_page(view: dict) -> str:
    """Render a projection (see ``PageSession.projection``) to an HTML fragment."""
    return _ENV.get_template("page.html").render(view=_sanitize_value(view))
