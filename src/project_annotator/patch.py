"""
JSON Patch (RFC 6902) construction for namespace annotations.
"""

from typing import Any, Dict, List, Mapping, Optional

ANNOTATIONS_PATH = "/metadata/annotations"


def escape_json_pointer(token: str) -> str:
    """
    Escape a reference token for use in a JSON Pointer (RFC 6901).

    ``~`` must be replaced before ``/`` so the ``~`` introduced by ``~1`` is
    not escaped again.
    """
    return token.replace("~", "~0").replace("/", "~1")


def unescape_json_pointer(token: str) -> str:
    """Reverse escape_json_pointer. ``~1`` is decoded before ``~0``."""
    return token.replace("~1", "/").replace("~0", "~")


def annotation_path(key: str) -> str:
    return f"{ANNOTATIONS_PATH}/{escape_json_pointer(key)}"


def build_annotation_patch(annotations: Optional[Mapping[str, str]],
                           key: str, value: str) -> List[Dict[str, Any]]:
    """
    Build the patch that sets annotation ``key`` to ``value``.

    When the object has no annotation map, the map is created first and the
    key added in a second operation. Otherwise a single ``add`` is emitted,
    which replaces the value if the key is already present.

    Args:
        annotations: Current annotations of the object, None when absent
        key: Annotation key
        value: Annotation value

    Returns:
        List[Dict[str, Any]]: JSON Patch operations
    """
    patch: List[Dict[str, Any]] = []
    if annotations is None:
        patch.append({"op": "add", "path": ANNOTATIONS_PATH, "value": {}})
    patch.append({"op": "add", "path": annotation_path(key), "value": value})
    return patch
