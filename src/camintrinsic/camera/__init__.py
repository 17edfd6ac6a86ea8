"""
Camera models: six variants behind one project/unproject contract.
"""

from .generic import (
    check_model,
    get_definition,
    in_domain,
    max_fov_angle,
    neutral_distortion,
    param_bounds,
    project,
    project_point,
    project_raw,
    project_with_jacobians,
    unproject,
    unproject_pixel,
)
from .models import MODEL_DEFINITIONS, ModelDefinition

__all__ = [
    "MODEL_DEFINITIONS",
    "ModelDefinition",
    "check_model",
    "get_definition",
    "in_domain",
    "max_fov_angle",
    "neutral_distortion",
    "param_bounds",
    "project",
    "project_point",
    "project_raw",
    "project_with_jacobians",
    "unproject",
    "unproject_pixel",
]
