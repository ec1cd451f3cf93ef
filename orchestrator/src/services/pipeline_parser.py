"""
Pipeline YAML parser and validator.
"""

import yaml
from pydantic import ValidationError as SchemaError
from typing import Dict, Any, Optional, Union

from orchestrator.src.errors import PipelineConfigError
from orchestrator.src.models.pipeline import PipelineDefinition

STAGE_KEYS = {
    "name", "steps", "environment", "post", "depends_on",
    "blocking", "required", "enabled", "timeout", "retries",
}
HOOK_KEYS = {"always", "success", "failure"}

def parse_pipeline_config(yaml_content: str) -> PipelineDefinition:
    """Parse pipeline YAML configuration from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML: {e}")

    return validate_config(config)

def parse_pipeline_file(path: str) -> PipelineDefinition:
    """Parse a pipeline definition file."""
    try:
        with open(path, "r") as f:
            content = f.read()
    except OSError as e:
        raise PipelineConfigError(f"Cannot read pipeline file {path}: {e}")

    return parse_pipeline_config(content)

def parse_pipeline_dict(config: Dict[str, Any]) -> PipelineDefinition:
    """Validate pipeline configuration from dict."""
    return validate_config(config)

def validate_config(config: Optional[Dict[str, Any]]) -> PipelineDefinition:
    """Validate pipeline configuration structure."""
    if not config:
        raise PipelineConfigError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise PipelineConfigError("Pipeline configuration must be a dictionary")

    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise PipelineConfigError("Pipeline 'name' must be a string")

    if "stages" not in config:
        raise PipelineConfigError("Pipeline must have 'stages' defined")

    stages = config["stages"]
    if not isinstance(stages, list):
        raise PipelineConfigError("Pipeline 'stages' must be a list")

    if len(stages) == 0:
        raise PipelineConfigError("Pipeline must have at least one stage")

    validated = {
        "name": name,
        "stages": [validate_stage(stage, i) for i, stage in enumerate(stages)],
        "environment": validate_environment(config.get("environment"), "Pipeline"),
        "post": validate_hooks(config.get("post"), "Pipeline"),
    }

    try:
        return PipelineDefinition.model_validate(validated)
    except SchemaError as e:
        raise PipelineConfigError(f"Invalid pipeline: {e}")

def validate_stage(stage: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Validate a single pipeline stage."""
    if not isinstance(stage, dict):
        raise PipelineConfigError(f"Stage {index} must be a dictionary")

    if "name" not in stage:
        raise PipelineConfigError(f"Stage {index} missing 'name'")

    if not isinstance(stage["name"], str):
        raise PipelineConfigError(f"Stage {index} 'name' must be a string")

    unknown = set(stage) - STAGE_KEYS
    if unknown:
        raise PipelineConfigError(
            f"Stage {index} has unknown keys: {', '.join(sorted(unknown))}"
        )

    steps = stage.get("steps", [])
    if not isinstance(steps, list):
        raise PipelineConfigError(f"Stage {index} 'steps' must be a list")

    where = f"Stage {index}"
    validated = dict(stage)
    validated["steps"] = [validate_step(step, where, j) for j, step in enumerate(steps)]
    if "environment" in stage:
        validated["environment"] = validate_environment(stage["environment"], where)
    if "post" in stage:
        validated["post"] = validate_hooks(stage["post"], where)

    depends_on = stage.get("depends_on")
    if isinstance(depends_on, str):
        validated["depends_on"] = [depends_on]
    elif depends_on is not None and not isinstance(depends_on, list):
        raise PipelineConfigError(f"Stage {index} 'depends_on' must be a list")

    return validated

def validate_step(step: Union[str, Dict[str, Any]], where: str, index: int) -> Dict[str, Any]:
    """Validate a single step. A bare string is shorthand for a command."""
    if isinstance(step, str):
        return {"command": step}

    if not isinstance(step, dict):
        raise PipelineConfigError(f"{where} step {index} must be a string or dictionary")

    if "command" not in step:
        raise PipelineConfigError(f"{where} step {index} missing 'command'")

    if not isinstance(step["command"], str):
        raise PipelineConfigError(f"{where} step {index} 'command' must be a string")

    for key in ("credentials", "produces", "consumes"):
        value = step.get(key, [])
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise PipelineConfigError(f"{where} step {index} '{key}' must be a list of strings")

    validated = dict(step)
    env = step.get("env", {})
    if not isinstance(env, dict):
        raise PipelineConfigError(f"{where} step {index} 'env' must be a dictionary")
    validated["env"] = {str(k): str(v) for k, v in env.items()}
    return validated

def validate_environment(environment: Optional[Dict[str, Any]], where: str) -> Dict[str, Any]:
    if environment is None:
        return {}

    if not isinstance(environment, dict):
        raise PipelineConfigError(f"{where} 'environment' must be a dictionary")

    variables = environment.get("variables", {})
    if not isinstance(variables, dict):
        raise PipelineConfigError(f"{where} environment 'variables' must be a dictionary")

    validated = dict(environment)
    validated["variables"] = {str(k): str(v) for k, v in variables.items()}
    return validated

def validate_hooks(hooks: Optional[Dict[str, Any]], where: str) -> Dict[str, Any]:
    if hooks is None:
        return {}

    if not isinstance(hooks, dict):
        raise PipelineConfigError(f"{where} 'post' must be a dictionary")

    unknown = set(hooks) - HOOK_KEYS
    if unknown:
        raise PipelineConfigError(
            f"{where} 'post' has unknown conditions: {', '.join(sorted(unknown))}"
        )

    validated = {}
    for condition, steps in hooks.items():
        if isinstance(steps, str):
            steps = [steps]
        if not isinstance(steps, list):
            raise PipelineConfigError(f"{where} post '{condition}' must be a list")
        validated[condition] = [
            validate_step(step, f"{where} post '{condition}'", j)
            for j, step in enumerate(steps)
        ]
    return validated
