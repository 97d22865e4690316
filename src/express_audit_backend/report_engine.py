"""
Express compatibility rules evaluated over a Photoshop document manifest.

The checks an asset must pass to be editable in Express:

1. File size is at most 500 MiB
2. Width and height are each at most 8000 px
3. Image mode is not CMYK
4. At most one artboard
5. At most 20 raster layers
6. No smart objects

The manifest layer tree is flattened into a :class:`LayerArena` of
index-addressed nodes and classified with an explicit work stack, so deeply
nested documents cannot exhaust the interpreter stack.  Reports are immutable
values; every rule verdict and the overall status are computed from the stored
fields on access.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import InvalidManifest
from .models import JobRecord

MAX_ARTBOARD_COUNT = 1
MAX_DIMENSION_PX = 8000
MAX_SIZE_BYTES = 520093696
MAX_LAYER_COUNT = 20
MAX_SMART_OBJECT_COUNT = 0
INCOMPATIBLE_IMAGE_MODES = frozenset({"cmyk"})

ARTBOARD_TYPES = frozenset({"layerSection"})
RASTER_LAYER_TYPES = frozenset({"layer", "backgroundLayer"})
SMART_OBJECT_TYPES = frozenset({"smartObject"})
TEXT_LAYER_TYPES = frozenset({"textLayer"})
STYLE_KEYS = ("layerEffects", "style")

COMPATIBLE_EDITABLE = "Compatible_Editable"
COMPATIBLE_LINKED = "Compatible_Linked"


@dataclass(frozen=True)
class LayerNode:
    index: int
    type: str
    name: str
    children: Tuple[int, ...] = ()
    has_style: bool = False


@dataclass(frozen=True)
class LayerArena:
    nodes: Tuple[LayerNode, ...]
    roots: Tuple[int, ...]

    @classmethod
    def from_manifest_layers(cls, layers: Sequence[Mapping[str, Any]]) -> "LayerArena":
        """Flatten a nested manifest layer list into pre-ordered, index-addressed nodes."""
        raw_nodes: List[Dict[str, Any]] = []
        roots: List[int] = []
        if not isinstance(layers or [], (list, tuple)):
            raise InvalidManifest("manifest layers is not a list")
        stack: List[Tuple[Mapping[str, Any], Optional[int]]] = [(layer, None) for layer in reversed(layers or [])]

        while stack:
            layer, parent = stack.pop()
            if not isinstance(layer, Mapping):
                continue
            index = len(raw_nodes)
            raw_nodes.append(
                {
                    "index": index,
                    "type": str(layer.get("type") or ""),
                    "name": str(layer.get("name") or ""),
                    "children": [],
                    "has_style": any(layer.get(key) for key in STYLE_KEYS),
                }
            )
            if parent is None:
                roots.append(index)
            else:
                raw_nodes[parent]["children"].append(index)
            children = layer.get("children") or []
            if not isinstance(children, list):
                raise InvalidManifest(f"children of layer {index} is not a list")
            for child in reversed(children):
                stack.append((child, index))

        nodes = tuple(
            LayerNode(
                index=node["index"],
                type=node["type"],
                name=node["name"],
                children=tuple(node["children"]),
                has_style=node["has_style"],
            )
            for node in raw_nodes
        )
        return cls(nodes=nodes, roots=tuple(roots))

    def walk(self):
        """Yield nodes depth-first from the roots."""
        stack = list(reversed(self.roots))
        while stack:
            node = self.nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.children))


@dataclass(frozen=True)
class LayerCounts:
    artboard_count: int = 0
    layer_count: int = 0
    smart_object_count: int = 0
    text_layer_count: int = 0
    text_layer_style_count: int = 0


def classify_layers(arena: LayerArena) -> LayerCounts:
    artboards = layers = smart_objects = text_layers = text_styles = 0
    for node in arena.walk():
        if node.type in ARTBOARD_TYPES:
            artboards += 1
        elif node.type in RASTER_LAYER_TYPES:
            layers += 1
        elif node.type in SMART_OBJECT_TYPES:
            smart_objects += 1
        elif node.type in TEXT_LAYER_TYPES:
            text_layers += 1
            if node.has_style:
                text_styles += 1
    return LayerCounts(
        artboard_count=artboards,
        layer_count=layers,
        smart_object_count=smart_objects,
        text_layer_count=text_layers,
        text_layer_style_count=text_styles,
    )


def new_report_filename() -> str:
    return f"{int(time.time() * 1000)}-{random.randint(0, 999)}-asset-report.json"


_JSON_KEYS = {
    "filename": "filename",
    "asset_name": "assetName",
    "asset_path": "assetPath",
    "asset_uuid": "assetUuid",
    "artboard_count": "artboardCount",
    "layer_count": "layerCount",
    "smart_object_count": "smartObjectCount",
    "text_layer_count": "textLayerCount",
    "text_layer_style_count": "textLayerStyleCount",
    "bit_depth": "bitDepth",
    "width": "width",
    "height": "height",
    "icc_profile_name": "iccProfileName",
    "image_mode": "imageMode",
    "size": "size",
}


@dataclass(frozen=True)
class AssetReport:
    filename: str = ""
    asset_name: str = ""
    asset_path: str = ""
    asset_uuid: str = ""
    artboard_count: int = 0
    layer_count: int = 0
    smart_object_count: int = 0
    text_layer_count: int = 0
    text_layer_style_count: int = 0
    bit_depth: Any = "na"
    width: int = 0
    height: int = 0
    icc_profile_name: Any = None
    image_mode: str = "na"
    size: int = 0

    @property
    def artboard_count_ok(self) -> bool:
        return self.artboard_count <= MAX_ARTBOARD_COUNT

    @property
    def width_ok(self) -> bool:
        return self.width <= MAX_DIMENSION_PX

    @property
    def height_ok(self) -> bool:
        return self.height <= MAX_DIMENSION_PX

    @property
    def size_ok(self) -> bool:
        return self.size <= MAX_SIZE_BYTES

    @property
    def image_mode_ok(self) -> bool:
        return str(self.image_mode).lower() not in INCOMPATIBLE_IMAGE_MODES

    @property
    def layer_count_ok(self) -> bool:
        return self.layer_count <= MAX_LAYER_COUNT

    @property
    def smart_object_count_ok(self) -> bool:
        return self.smart_object_count <= MAX_SMART_OBJECT_COUNT

    def rule_results(self) -> Dict[str, bool]:
        return {
            "artboardCountOk": self.artboard_count_ok,
            "widthOk": self.width_ok,
            "heightOk": self.height_ok,
            "sizeOk": self.size_ok,
            "imageModeOk": self.image_mode_ok,
            "layerCountOk": self.layer_count_ok,
            "smartObjectCountOk": self.smart_object_count_ok,
        }

    @property
    def status(self) -> str:
        return "ok" if all(self.rule_results().values()) else "error"

    @property
    def express_compatibility(self) -> str:
        return COMPATIBLE_EDITABLE if self.status == "ok" else COMPATIBLE_LINKED

    def get_report_as_json(self) -> Dict[str, Any]:
        report = {_JSON_KEYS[field.name]: getattr(self, field.name) for field in fields(self)}
        report.update(self.rule_results())
        report["status"] = self.status
        return report

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "AssetReport":
        values = {name: data[key] for name, key in _JSON_KEYS.items() if key in data}
        return cls(**values)


def _first_output(manifest: Mapping[str, Any]) -> Mapping[str, Any]:
    outputs = manifest.get("outputs")
    if not isinstance(outputs, list) or not outputs or not isinstance(outputs[0], Mapping):
        raise InvalidManifest("manifest has no outputs")
    output = outputs[0]
    if not isinstance(output.get("document") or {}, Mapping):
        raise InvalidManifest("manifest document is not a json object")
    if not isinstance(output.get("layers") or [], list):
        raise InvalidManifest("manifest layers is not a list")
    return output


def _size_from_repository_metadata(asset_metadata: Mapping[str, Any]) -> int:
    try:
        return int(asset_metadata["jcr:content"]["metadata"]["dam:size"])
    except (KeyError, TypeError, ValueError):
        return 0


def build_asset_report(
    manifest: Any,
    snapshot: Optional[JobRecord] = None,
    asset_metadata: Optional[Mapping[str, Any]] = None,
    filename: Optional[str] = None,
) -> AssetReport:
    """
    Evaluate a manifest and build the compatibility report.

    Args:
        manifest: Manifest job body with ``outputs[0].document`` and ``outputs[0].layers``
        snapshot: Job record captured at submission time; supplies size and asset identity
        asset_metadata: Repository metadata used when no snapshot is available
        filename: Report file name; generated when omitted

    Returns:
        An immutable AssetReport

    Raises:
        InvalidManifest: If ``manifest`` or its first output is not shaped as expected
    """
    if not isinstance(manifest, Mapping):
        raise InvalidManifest("manifest type is not a json object")

    output = _first_output(manifest)
    document = output.get("document") or {}
    counts = classify_layers(LayerArena.from_manifest_layers(output.get("layers") or []))
    try:
        width = int(document.get("width") or 0)
        height = int(document.get("height") or 0)
    except (TypeError, ValueError) as exc:
        raise InvalidManifest(f"manifest document dimensions are not numeric: {exc}") from exc

    if snapshot is not None:
        size = snapshot.asset_size_bytes
        asset_name = snapshot.asset_name or ""
        asset_path = snapshot.asset_path
        asset_uuid = snapshot.asset_uuid or ""
    elif asset_metadata is not None:
        size = _size_from_repository_metadata(asset_metadata)
        asset_name = str(asset_metadata.get("jcr:content", {}).get("metadata", {}).get("dc:title") or "")
        asset_path = ""
        asset_uuid = str(asset_metadata.get("jcr:uuid") or "")
    else:
        size, asset_name, asset_path, asset_uuid = 0, "", "", ""

    return AssetReport(
        filename=filename or new_report_filename(),
        asset_name=asset_name,
        asset_path=asset_path,
        asset_uuid=asset_uuid,
        artboard_count=counts.artboard_count,
        layer_count=counts.layer_count,
        smart_object_count=counts.smart_object_count,
        text_layer_count=counts.text_layer_count,
        text_layer_style_count=counts.text_layer_style_count,
        bit_depth=document.get("bitDepth", "na"),
        width=width,
        height=height,
        icc_profile_name=document.get("iccProfileName"),
        image_mode=str(document.get("imageMode") or "na"),
        size=size,
    )


def format_report_comment(report: AssetReport) -> str:
    """Render a report as the plain-text comment written onto the asset."""
    lines = [
        f"Artboard count: {report.artboard_count}",
        f"artboard count ok: {report.artboard_count_ok}",
        f"layer count: {report.layer_count}",
        f"layer count ok: {report.layer_count_ok}",
        f"smart object count: {report.smart_object_count}",
        f"smart object count ok: {report.smart_object_count_ok}",
        f"text layer count: {report.text_layer_count}",
        f"bit depth: {report.bit_depth}",
        f"height: {report.height}",
        f"height ok: {report.height_ok}",
        f"width: {report.width}",
        f"width ok: {report.width_ok}",
        f"size: {report.size}",
        f"size ok: {report.size_ok}",
        f"icc profile name: {report.icc_profile_name}",
        f"image mode: {report.image_mode}",
        f"image mode ok: {report.image_mode_ok}",
        f"status: {report.status}",
    ]
    return "\n".join(lines)
