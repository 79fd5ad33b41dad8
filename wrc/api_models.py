from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from .models import LabelRequirement, RolloutPolicy, Selector, Template, WorkloadSpec


class LabelRequirementModel(BaseModel):
    key: str
    operator: Literal["In", "NotIn", "Exists", "DoesNotExist"]
    values: list[str] = Field(default_factory=list)


class SelectorModel(BaseModel):
    match_labels: dict[str, str] = Field(default_factory=dict)
    match_expressions: list[LabelRequirementModel] = Field(default_factory=list)

    def to_selector(self) -> Selector:
        return Selector(
            match_labels=dict(self.match_labels),
            match_expressions=tuple(
                LabelRequirement(key=e.key, operator=e.operator, values=tuple(e.values)) for e in self.match_expressions
            ),
        )


class TemplateModel(BaseModel):
    spec: dict[str, Any] = Field(
        default_factory=dict, description="Opaque runtime template, e.g. image, port, health_path, env, command"
    )
    labels: dict[str, str] = Field(..., description="Labels stamped on every instance")


class WorkloadRequest(BaseModel):
    replicas: int = Field(1, ge=0, le=1000)
    template: TemplateModel
    selector: SelectorModel | None = Field(None, description="Defaults to the template labels")
    max_surge: int = Field(1, ge=0, le=1000)
    max_unavailable: int = Field(0, ge=0, le=1000)
    min_replicas: int = Field(0, ge=0, le=1000)
    max_replicas: int | None = Field(None, ge=0, le=1000)
    autoscale_target: float | None = Field(None, gt=0, description="Per-instance metric target for autoscaling")
    autoscale_tolerance: float = Field(0.1, ge=0, le=1)

    def to_spec(self, name: str) -> WorkloadSpec:
        selector = self.selector.to_selector() if self.selector else Selector(match_labels=dict(self.template.labels))
        return WorkloadSpec(
            name=name,
            replicas=self.replicas,
            template=Template(spec=dict(self.template.spec), labels=dict(self.template.labels)),
            selector=selector,
            policy=RolloutPolicy(max_surge=self.max_surge, max_unavailable=self.max_unavailable),
            min_replicas=self.min_replicas,
            max_replicas=self.max_replicas,
        )


class ScaleRequest(BaseModel):
    replicas: int = Field(..., ge=0, le=1000)


class RollbackRequest(BaseModel):
    revision: int | None = Field(None, ge=1, description="Revision number; the previous one when omitted")


class MetricSampleRequest(BaseModel):
    value: float = Field(..., ge=0)
    current_replicas: int | None = Field(None, ge=0)
