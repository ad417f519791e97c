"""
Material Overrides Module

Applies the ``overrides.materials`` section of the output configuration.
Each override selects materials with regex rules (``name``) and applies its
values to every match. The special rule ``find_missing_textures_from`` names
a directory, relative to the output configuration file, that is searched
for image files to embed for images missing from the container.
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from avatar_build.bridge.types import MaterialOverride, OutputConfig
from avatar_build.gltf.document import Document

ALPHA_MODES = ("OPAQUE", "MASK", "BLEND")

IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}

MISSING_TEXTURES_RULE = "find_missing_textures_from"
NAME_RULE = "name"


class MaterialOverrides:
    """
    Applies material overrides from an output configuration.

    Key operations:
    1. Match materials against each override's rules
    2. Apply supported values (``alphaMode``)
    3. Embed image files for images that have no data in the container
    """

    def __init__(self, output_config: OutputConfig):
        self.output_config = output_config

    def apply(self, document: Document) -> int:
        """
        Apply every material override to the document.

        Returns:
            Number of (override, material) matches
        """
        matched = 0
        embedded = 0
        for override in self.output_config.overrides.materials:
            for material_index in self.matching_materials(document, override):
                matched += 1
                self.apply_values(document.materials[material_index], override.values)
                if MISSING_TEXTURES_RULE in override.rules:
                    embedded += self.find_missing_textures(
                        document, material_index, override.rules[MISSING_TEXTURES_RULE]
                    )

        if embedded:
            document.repack()
            logger.info("Embedded {} missing texture files", embedded)
        return matched

    def matching_materials(self, document: Document, override: MaterialOverride) -> List[int]:
        """
        Materials whose name fully matches the override's ``name`` regex.

        Other rule keys are ignored; an override without a ``name`` rule
        matches every material.
        """
        pattern = override.rules.get(NAME_RULE)
        if pattern is None:
            return list(range(len(document.materials)))
        return [
            index
            for index, material in enumerate(document.materials)
            if re.fullmatch(pattern, str(material.get("name", "")))
        ]

    def apply_values(self, material: Dict[str, Any], values: Dict[str, Any]) -> None:
        for key, value in values.items():
            if key == "alphaMode":
                if value in ALPHA_MODES:
                    material["alphaMode"] = value
                else:
                    logger.warning("Unknown alphaMode '{}' for material '{}'", value, material.get("name"))
            else:
                logger.debug("Unsupported material override '{}'", key)

    def find_missing_textures(self, document: Document, material_index: int, directory: str) -> int:
        """
        Embed image files matching the material's missing images.

        A file matches by stem against, in order: image names, texture names,
        then the material name (for its base color texture), each also with
        a ``_color`` suffix.

        Returns:
            Number of images embedded
        """
        base_dir = self.output_config.base_dir or Path.cwd()
        search_dir = base_dir / directory
        if not search_dir.is_dir():
            logger.warning("Texture directory {} does not exist", search_dir)
            return 0

        candidates = self._candidate_names(document, material_index)
        embedded = 0
        for path in sorted(search_dir.iterdir()):
            mime_type = IMAGE_MIME_TYPES.get(path.suffix.lower())
            if mime_type is None:
                continue
            image_index = candidates.get(path.stem)
            if image_index is None:
                continue

            image = document.images[image_index]
            if "bufferView" in image:
                continue

            view_index = document.add_buffer_view(path.read_bytes(), name=path.stem)
            image.pop("uri", None)
            image["bufferView"] = view_index
            image["mimeType"] = mime_type
            embedded += 1
            logger.debug("Embedded {} as image {}", path.name, image_index)

        return embedded

    def _candidate_names(self, document: Document, material_index: int) -> Dict[str, int]:
        names: List[Tuple[Optional[str], Optional[int]]] = []
        for index, image in enumerate(document.images):
            names.append((image.get("name"), index))
        for texture in document.json.get("textures", []):
            names.append((texture.get("name"), texture.get("source")))

        material = document.materials[material_index]
        base_color = material.get("pbrMetallicRoughness", {}).get("baseColorTexture")
        if base_color is not None:
            textures = document.json.get("textures", [])
            texture_index = base_color.get("index")
            if texture_index is not None and 0 <= texture_index < len(textures):
                names.append((material.get("name"), textures[texture_index].get("source")))

        candidates: Dict[str, int] = {}
        for name, image_index in names:
            if not name or image_index is None:
                continue
            candidates.setdefault(name, image_index)
            candidates.setdefault(f"{name}_color", image_index)
        return candidates


def apply_material_overrides(document: Document, output_config: Optional[OutputConfig]) -> int:
    if output_config is None:
        return 0
    return MaterialOverrides(output_config).apply(document)
