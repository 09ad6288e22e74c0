"""Pipeline description module.

This module handles:
- Pipeline schema validation (pydantic)
- The built-in Rosetta pipeline
- Stage dependency graph
- Dockerfile rendering
- Pipeline import/export (YAML/JSON)
"""

from rosetta_imagegen.pipeline.defaults import default_pipeline
from rosetta_imagegen.pipeline.schema import PipelineSchema

__all__ = ["PipelineSchema", "default_pipeline"]
