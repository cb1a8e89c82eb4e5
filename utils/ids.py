"""Deterministic identifiers for fragments and structured records."""
import uuid

_NAMESPACE = uuid.UUID("6f1c1d1e-4b52-4c1a-9d55-0b8f3c2e7a10")


def chunk_id(document_id: str, start_char: int, end_char: int) -> str:
    return str(uuid.uuid5(_NAMESPACE, f"chunk:{document_id}:{start_char}:{end_char}"))


def scene_fragment_id(document_id: str, global_scene_index: int) -> str:
    return str(uuid.uuid5(_NAMESPACE, f"scene:{document_id}:{global_scene_index}"))


def snippet_id(document_id: str, position_index: int) -> str:
    return str(uuid.uuid5(_NAMESPACE, f"snippet:{document_id}:{position_index}"))