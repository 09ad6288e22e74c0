"""Pipeline file loading and export.

Pipelines can be stored as YAML or JSON. Loading validates through
PipelineSchema; exporting writes YAML with the key order of the schema.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from rosetta_imagegen.pipeline.defaults import default_pipeline
from rosetta_imagegen.pipeline.schema import PipelineSchema

if TYPE_CHECKING:
    from rosetta_imagegen.config import Settings

YAML_SUFFIXES = {".yaml", ".yml"}
JSON_SUFFIXES = {".json"}


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the content is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the content is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_pipeline(path: Path) -> PipelineSchema:
    """Load and validate a pipeline from a YAML or JSON file.

    Args:
        path: Path to the pipeline file.

    Returns:
        Validated PipelineSchema instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If data does not match schema.
        ValueError: If the extension is unsupported or content malformed.
    """
    suffix = path.suffix.lower()
    if suffix in YAML_SUFFIXES:
        data = load_yaml(path)
    elif suffix in JSON_SUFFIXES:
        data = load_json(path)
    else:
        raise ValueError(f"Unsupported pipeline file extension: {path.suffix}")
    return PipelineSchema.model_validate(data)


def pipeline_to_dict(pipeline: PipelineSchema) -> dict[str, Any]:
    """Convert a pipeline to a plain dict suitable for serialization."""
    return pipeline.model_dump(mode="json", exclude_none=True)


def pipeline_to_yaml_string(pipeline: PipelineSchema) -> str:
    """Serialize a pipeline to YAML text."""
    return yaml.safe_dump(
        pipeline_to_dict(pipeline),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


def save_pipeline(pipeline: PipelineSchema, path: Path) -> Path:
    """Write a pipeline to a YAML or JSON file, chosen by extension.

    Raises:
        ValueError: If the extension is unsupported.
    """
    suffix = path.suffix.lower()
    if suffix in YAML_SUFFIXES:
        content = pipeline_to_yaml_string(pipeline)
    elif suffix in JSON_SUFFIXES:
        content = json.dumps(pipeline_to_dict(pipeline), indent=2) + "\n"
    else:
        raise ValueError(f"Unsupported pipeline file extension: {path.suffix}")

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def get_pipeline(
    settings: Settings | None = None,
    path: Path | None = None,
) -> PipelineSchema:
    """Return the effective pipeline.

    Args:
        settings: Application settings.
        path: Explicit pipeline file; overrides settings.

    Returns:
        Pipeline loaded from file, or the built-in default.
    """
    if path is None and settings is not None:
        path = settings.pipeline_file
    if path is None:
        return default_pipeline()
    return load_pipeline(path)


__all__ = [
    "get_pipeline",
    "load_json",
    "load_pipeline",
    "load_yaml",
    "pipeline_to_dict",
    "pipeline_to_yaml_string",
    "save_pipeline",
]
