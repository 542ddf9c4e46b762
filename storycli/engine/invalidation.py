"""Downstream invalidation for data-mutating skills.

When a skill that writes through to project data completes, consumers
holding cached copies of that data need to refetch. Each skill maps to
region templates; ``$token`` parts are filled from the project id and the
task's context parameters. Templates that still contain a token after
resolution are skipped.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping

logger = logging.getLogger(__name__)

Region = tuple[str, ...]

SKILL_REGIONS: dict[str, tuple[Region, ...]] = {
    # Characters
    "character-backstory": (("characters", "$characterId"), ("characters", "project", "$projectId")),
    "character-traits": (("characters", "$characterId"), ("traits", "$characterId")),
    "character-appearance": (("characters", "$characterId"),),
    "character-relationships": (("relationships", "$characterId"), ("relationships", "project", "$projectId")),
    "character-dialogue": (("characters", "$characterId"),),
    "character-names": (("characters", "project", "$projectId"),),
    # Factions
    "faction-lore": (("factions", "$factionId"), ("factions", "project", "$projectId")),
    "faction-relationships": (("factions", "$factionId", "relationships"),),
    "faction-events": (("factions", "$factionId", "events"),),
    "faction-creation": (("factions", "project", "$projectId"),),
    # Scenes
    "scene-generation": (("scenes", "project", "$projectId"), ("scenes", "act", "$actId")),
    "scene-description": (("scenes", "$sceneId"),),
    "scene-compose": (("scenes", "$sceneId"), ("scenes", "project", "$projectId")),
    "scene-dialogue": (("scenes", "$sceneId"),),
    # Story
    "story-write-content": (("scenes", "$sceneId"), ("story", "project", "$projectId")),
    "story-architect": (("acts", "project", "$projectId"), ("story", "project", "$projectId")),
    # Beats
    "beat-description": (("beats", "$beatId"), ("beats", "act", "$actId")),
    "beat-suggestions": (("beats", "project", "$projectId"),),
    "beat-scene-mappings": (("beat-scene-mappings", "project", "$projectId"),),
}


def is_mutating(skill_id: str | None) -> bool:
    return skill_id is not None and skill_id in SKILL_REGIONS


def _resolve(template: Region, context: Mapping[str, str]) -> Region:
    resolved = []
    for part in template:
        if part.startswith("$"):
            value = context.get(part[1:])
            resolved.append(str(value) if value else part)
        else:
            resolved.append(part)
    return tuple(resolved)


def resolve_regions(
    skill_id: str | None,
    context: Mapping[str, str],
) -> list[Region]:
    """Concrete regions to invalidate after *skill_id* completed."""
    if not is_mutating(skill_id):
        return []
    regions: list[Region] = []
    for template in SKILL_REGIONS[skill_id]:
        region = _resolve(template, context)
        if any(part.startswith("$") for part in region):
            logger.debug("Skipping unresolved region %s for %s", "/".join(region), skill_id)
            continue
        if region not in regions:
            regions.append(region)
    return regions
