import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional


@dataclass(frozen=True)
class StepDefinition:
    id: str
    label: str
    description: str = ""
    icon: str = "circle"
    estimated_duration: int = 5

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def step_definition_for(step_class) -> StepDefinition:
    """Definition declared on a step class, or one derived from its name."""
    definition = getattr(step_class, "definition", None)
    if isinstance(definition, StepDefinition):
        return definition

    class_name = step_class.__name__
    for suffix in ("Step", "Job"):
        if class_name.endswith(suffix) and class_name != suffix:
            class_name = class_name[: -len(suffix)]
            break
    step_id = _snake_case(class_name)
    return StepDefinition(id=step_id, label=step_id.replace("_", " ").title())


def build_workflow_definition(
    steps: Iterable[Any],
    workflow_type: str,
    name: Optional[str] = None,
) -> Dict[str, Any]:
    """Describe a chain as ``{type, name, category, steps}``.

    ``steps`` may hold step classes, step instances or ``StepDefinition``s.
    """
    definitions: List[Dict[str, Any]] = []
    for step in steps:
        if isinstance(step, StepDefinition):
            definitions.append(step.to_dict())
            continue
        step_class = step if isinstance(step, type) else type(step)
        definitions.append(step_definition_for(step_class).to_dict())

    return {
        "type": workflow_type,
        "name": name or workflow_type.replace("_", " ").title(),
        "category": "job_chain",
        "steps": definitions,
    }
