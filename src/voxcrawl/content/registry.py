from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

CONTENT_SCHEMA_VERSION = 1
DEFAULT_CONTENT_PATH = "content/content.json"

FACTIONS = ("none", "player", "monster", "neutral")
ITEM_EFFECTS = ("none", "heal", "reveal")


@dataclass(frozen=True)
class ItemDef:
    item_id: str
    name: str
    effect: str
    power: int
    tags: tuple[str, ...]


@dataclass(frozen=True)
class EntityTemplate:
    template_id: str
    name: str
    faction: str
    stats: Mapping[str, int]
    flags: tuple[str, ...]
    inventory: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class ContentRegistry:
    """Static game content, fully resolved before any simulation is built.

    Passed explicitly into ``Simulation``; never stored as a global.
    """

    schema_version: int
    items: tuple[ItemDef, ...]
    templates: tuple[EntityTemplate, ...]

    def items_by_id(self) -> dict[str, ItemDef]:
        return {item.item_id: item for item in self.items}

    def templates_by_id(self) -> dict[str, EntityTemplate]:
        return {template.template_id: template for template in self.templates}

    def item(self, item_id: str) -> ItemDef | None:
        return self.items_by_id().get(item_id)

    def template(self, template_id: str) -> EntityTemplate | None:
        return self.templates_by_id().get(template_id)


EMPTY_CONTENT = ContentRegistry(schema_version=CONTENT_SCHEMA_VERSION, items=(), templates=())


def load_content_json(path: str | Path) -> ContentRegistry:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    return content_from_payload(payload)


def _int_mapping(value: Any, *, field_name: str) -> Mapping[str, int]:
    if value is None:
        return MappingProxyType({})
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be an object")
    normalized: dict[str, int] = {}
    for key in sorted(value):
        raw = value[key]
        if not isinstance(key, str) or not key:
            raise ValueError(f"{field_name} keys must be non-empty strings")
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValueError(f"{field_name}[{key}] must be an integer")
        normalized[key] = raw
    return MappingProxyType(normalized)


def _string_tuple(value: Any, *, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ValueError(f"{field_name} must be a list when present")
    for index, entry in enumerate(value):
        if not isinstance(entry, str) or not entry:
            raise ValueError(f"{field_name}[{index}] must be a non-empty string")
    return tuple(sorted(dict.fromkeys(value)))


def content_from_payload(payload: dict[str, Any]) -> ContentRegistry:
    if not isinstance(payload, dict):
        raise ValueError("content payload must be an object")

    schema_version = payload.get("schema_version")
    if not isinstance(schema_version, int):
        raise ValueError("content must contain integer field: schema_version")
    if schema_version != CONTENT_SCHEMA_VERSION:
        raise ValueError(f"unsupported content schema_version: {schema_version}")

    raw_items = payload.get("items", [])
    if not isinstance(raw_items, list):
        raise ValueError("content.items must be a list")
    items: list[ItemDef] = []
    seen_item_ids: set[str] = set()
    for index, row in enumerate(raw_items):
        if not isinstance(row, dict):
            raise ValueError(f"items[{index}] must be an object")
        item_id = row.get("item_id")
        if not isinstance(item_id, str) or not item_id:
            raise ValueError(f"items[{index}].item_id must be a non-empty string")
        if item_id in seen_item_ids:
            raise ValueError(f"duplicate item_id: {item_id}")
        seen_item_ids.add(item_id)
        name = row.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError(f"items[{index}].name must be a non-empty string")
        effect = row.get("effect", "none")
        if effect not in ITEM_EFFECTS:
            raise ValueError(f"items[{index}].effect must be one of: {', '.join(ITEM_EFFECTS)}")
        power = row.get("power", 0)
        if isinstance(power, bool) or not isinstance(power, int):
            raise ValueError(f"items[{index}].power must be an integer")
        items.append(
            ItemDef(
                item_id=item_id,
                name=name,
                effect=effect,
                power=power,
                tags=_string_tuple(row.get("tags"), field_name=f"items[{index}].tags"),
            )
        )

    raw_templates = payload.get("templates", [])
    if not isinstance(raw_templates, list):
        raise ValueError("content.templates must be a list")
    templates: list[EntityTemplate] = []
    seen_template_ids: set[str] = set()
    for index, row in enumerate(raw_templates):
        if not isinstance(row, dict):
            raise ValueError(f"templates[{index}] must be an object")
        template_id = row.get("template_id")
        if not isinstance(template_id, str) or not template_id:
            raise ValueError(f"templates[{index}].template_id must be a non-empty string")
        if template_id in seen_template_ids:
            raise ValueError(f"duplicate template_id: {template_id}")
        seen_template_ids.add(template_id)
        name = row.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError(f"templates[{index}].name must be a non-empty string")
        faction = row.get("faction", "none")
        if faction not in FACTIONS:
            raise ValueError(f"templates[{index}].faction must be one of: {', '.join(FACTIONS)}")
        inventory = _int_mapping(row.get("inventory"), field_name=f"templates[{index}].inventory")
        for item_id in inventory:
            if item_id not in seen_item_ids:
                raise ValueError(f"templates[{index}].inventory references unknown item: {item_id}")
        templates.append(
            EntityTemplate(
                template_id=template_id,
                name=name,
                faction=faction,
                stats=_int_mapping(row.get("stats"), field_name=f"templates[{index}].stats"),
                flags=_string_tuple(row.get("flags"), field_name=f"templates[{index}].flags"),
                inventory=inventory,
            )
        )

    items.sort(key=lambda item: item.item_id)
    templates.sort(key=lambda template: template.template_id)
    return ContentRegistry(schema_version=schema_version, items=tuple(items), templates=tuple(templates))
