"""
Bone Resolver Module

Maps semantic bone keys ("hips", "leftUpperArm", ...) to scene nodes using the
expected node names from the input configuration. Matching is exact first,
then optionally by substring, with a symmetry guard that keeps a "right..."
key from claiming a left-side node.
"""

import re
from typing import Dict, Optional, Tuple

from loguru import logger

from avatar_build.bridge.types import BoneMap, InputConfig
from avatar_build.gltf.document import Document

_SIDES = ("right", "left")


def _side_of(text: str) -> Optional[str]:
    lowered = text.lower()
    for side in _SIDES:
        if lowered.startswith(side):
            return side
    return None


def symmetry_naming_test(
    node_name: str,
    bone_key: str,
    bone_name: str,
    with_any_case: bool,
) -> bool:
    """
    Check that a candidate node carries the side a bone key asks for.

    Keys (or expected names) starting with "right"/"left" require the node
    name to mark the same side: the side word before or after the expected
    name, an ``r_``/``r.``/``r `` prefix, an ``_r``/``.r``/`` r`` suffix (left
    equivalents with ``l``), or an expected name that itself starts with the
    side. Keys without a side always pass.

    Args:
        node_name: Candidate node name
        bone_key: Semantic bone key from the configuration
        bone_name: Expected node name (or fragment) for the key
        with_any_case: Match the expected name case-insensitively

    Returns:
        True when the candidate is acceptable for the key
    """
    side = _side_of(bone_key) or _side_of(bone_name)
    if side is None:
        return True

    flags = re.IGNORECASE if with_any_case else 0
    name = re.escape(bone_name)

    if _side_of(bone_name) == side and re.search(name, node_name, flags):
        return True

    word = f"(?i:{side})"
    letter = f"(?i:{side[0]})"
    patterns = [
        f"{word}.*{name}",
        f"{name}.*{word}",
        rf"{letter}(?:_|\.|\s+){name}",
        rf"{name}(?:_|\.|\s+){letter}",
    ]
    return any(re.search(pattern, node_name, flags) for pattern in patterns)


class BoneResolver:
    """
    Resolves the bone map of a document from an input configuration.

    Key operations:
    1. Index every named node (name -> first node index carrying it)
    2. For each bone key in declaration order, claim an exact-name match
    3. Otherwise, with pattern matching on, claim the first unclaimed node (in
       node declaration order) containing the expected name and passing the
       symmetry guard
    """

    def resolve(self, document: Document, input_config: Optional[InputConfig]) -> BoneMap:
        """
        Build the bone map for a document.

        Args:
            document: Loaded scene document
            input_config: Bone-name configuration (None yields an empty map)

        Returns:
            BoneMap with one node per resolved key, never sharing nodes
        """
        bone_map = BoneMap()

        # unclaimed pool, in node declaration order
        pool: Dict[str, int] = {}
        for index, node in enumerate(document.nodes):
            if node.name is None:
                continue
            pool.setdefault(node.name, index)

        if input_config is None or not input_config.bones:
            return bone_map

        search = input_config.config
        for bone_key, bone_name in input_config.bones.items():
            claimed = self._claim(pool, bone_key, bone_name, search.pattern_match, search.with_any_case)
            if claimed is None:
                bone_map.unmatched.append(bone_key)
                logger.warning("Bone '{}' ({}) not found in scene", bone_key, bone_name)
                continue

            node_name, node_index = claimed
            del pool[node_name]
            bone_map.bones[bone_key] = node_index
            logger.debug("Bone '{}' -> node {} '{}'", bone_key, node_index, node_name)

        logger.info(
            "Resolved {} of {} bones",
            len(bone_map.bones), len(input_config.bones),
        )
        return bone_map

    def _claim(
        self,
        pool: Dict[str, int],
        bone_key: str,
        bone_name: str,
        pattern_match: bool,
        with_any_case: bool,
    ) -> Optional[Tuple[str, int]]:
        if bone_name in pool:
            return bone_name, pool[bone_name]

        if not pattern_match or not bone_name:
            return None

        needle = bone_name.lower() if with_any_case else bone_name
        for node_name, node_index in pool.items():
            haystack = node_name.lower() if with_any_case else node_name
            if needle not in haystack:
                continue
            if symmetry_naming_test(node_name, bone_key, bone_name, with_any_case):
                return node_name, node_index
        return None


def resolve_bones(document: Document, input_config: Optional[InputConfig]) -> BoneMap:
    return BoneResolver().resolve(document, input_config)
