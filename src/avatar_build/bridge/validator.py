"""
Humanoid Validator Module

Final structural checks before an avatar is written. Validation never
raises: failures are reported and the caller discards the asset.
"""

from dataclasses import dataclass, field
from typing import List, Set

from loguru import logger

from avatar_build.bridge.types import BoneMap, HumanoidBone
from avatar_build.gltf.document import MAX_HIERARCHY_DEPTH, Document

MIN_HUMANOID_BONES = 11

_HUMANOID_KEYS = {bone.value for bone in HumanoidBone}


@dataclass
class ValidationReport:
    """Outcome of humanoid validation."""

    humanoid_bones: int = 0
    cycles: List[int] = field(default_factory=list)
    shared: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "humanoid_bones": self.humanoid_bones,
            "cycles": list(self.cycles),
            "shared": list(self.shared),
            "errors": list(self.errors),
        }


class HumanoidValidator:
    """
    Rejects avatars that cannot be used as VRM humanoids.

    Checks:
    1. At least ``MIN_HUMANOID_BONES`` humanoid bones were resolved
    2. No scene subtree contains a cycle, and no parent chain loops back on
       itself, within ``MAX_HIERARCHY_DEPTH`` levels
    3. No node is reachable through two different parents
    """

    def validate(self, document: Document, bone_map: BoneMap) -> ValidationReport:
        report = ValidationReport()

        report.humanoid_bones = sum(1 for key, _ in bone_map.items() if key in _HUMANOID_KEYS)
        if report.humanoid_bones < MIN_HUMANOID_BONES:
            report.errors.append(
                f"Only {report.humanoid_bones} humanoid bones resolved, "
                f"at least {MIN_HUMANOID_BONES} are required"
            )

        for root in document.scene_roots():
            self._find_cycles(document, root, set(), set(), 0, report)
        for index in range(len(document.nodes)):
            if index not in report.cycles and self._parent_chain_loops(document, index):
                report.cycles.append(index)
                report.errors.append(f"Node {index} is its own ancestor")

        for error in report.errors:
            logger.error("Validation failed: {}", error)
        return report

    def _find_cycles(
        self,
        document: Document,
        index: int,
        path: Set[int],
        visited: Set[int],
        depth: int,
        report: ValidationReport,
    ) -> None:
        if index in path:
            if index not in report.cycles:
                report.cycles.append(index)
                report.errors.append(f"Cycle detected at node {index}")
            return
        if index in visited:
            if index not in report.shared:
                report.shared.append(index)
                report.errors.append(f"Node {index} is the child of more than one node")
            return
        if depth >= MAX_HIERARCHY_DEPTH:
            report.errors.append(f"Node hierarchy deeper than {MAX_HIERARCHY_DEPTH} at node {index}")
            return

        path.add(index)
        visited.add(index)
        for child in document.nodes[index].children:
            if 0 <= child < len(document.nodes):
                self._find_cycles(document, child, path, visited, depth + 1, report)
        path.remove(index)

    def _parent_chain_loops(self, document: Document, index: int) -> bool:
        seen = {index}
        parent = document.nodes[index].parent
        for _ in range(MAX_HIERARCHY_DEPTH):
            if parent is None:
                return False
            if parent == index:
                return True
            if parent in seen:
                # loops elsewhere; reported for the nodes on that loop
                return False
            seen.add(parent)
            parent = document.nodes[parent].parent
        return False


def validate_humanoid(document: Document, bone_map: BoneMap) -> ValidationReport:
    return HumanoidValidator().validate(document, bone_map)
