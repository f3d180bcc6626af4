"""
Edge Protocol - How nodes connect in a pipeline.

Edges define:
1. Source and target nodes
2. An optional branch label, matched against a condition node's output

A node with several outgoing edges is a FORK; a node with several incoming
edges is a JOIN. Neither needs an explicit kind: the compiler infers both
from the edge structure. Explicit fork/join kinds are still accepted and
let authors declare the join strategy on the node itself.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from atelier.graph.node import NodeSpec


class JoinStrategy(StrEnum):
    """How a join aggregates the outcomes of its incoming branches."""

    ALL = "ALL"  # Fail if any branch failed
    ANY = "ANY"  # Succeed if at least one branch succeeded
    FIRST = "FIRST"  # Take the earliest success, discard the rest


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Plain data-flow edge
        EdgeSpec(source="segment", target="tryon")

        # Branch taken when the condition node evaluates true
        EdgeSpec(source="has_model_photo", target="tryon", condition="true")
    """

    id: str | None = None
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    condition: str | None = Field(
        default=None,
        description="Branch label for edges leaving a condition node ('true' or 'false')",
    )

    model_config = {"extra": "allow"}

    @field_validator("condition", mode="before")
    @classmethod
    def _normalize_condition(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value).strip().lower()

    @property
    def edge_id(self) -> str:
        return self.id or f"{self.source}->{self.target}"

    def should_traverse(self, source_output: dict[str, Any]) -> bool:
        """
        Determine if this edge should be followed after its source succeeded.

        Unlabelled edges are always followed. Labelled edges are followed only
        when the source published a matching ``branch``.
        """
        if self.condition is None:
            return True
        branch = source_output.get("branch")
        if isinstance(branch, bool):
            branch = "true" if branch else "false"
        return branch is not None and str(branch).lower() == self.condition


class PipelineSettings(BaseModel):
    """Pipeline-wide execution settings."""

    error_handling: Literal["stop", "continue", "rollback"] | None = Field(
        default=None, alias="errorHandling"
    )
    default_timeout_ms: int | None = Field(default=None, alias="defaultTimeout")
    join_strategy: JoinStrategy | None = Field(default=None, alias="joinStrategy")
    allow_cycles: bool | None = Field(default=None, alias="allowCycles")

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("join_strategy", mode="before")
    @classmethod
    def _upper_strategy(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class PipelineDefinition(BaseModel):
    """
    Complete declarative pipeline, as produced by the visual editor.

    Immutable once published; many runs reference one definition.

        PipelineDefinition(
            id="lookbook-v3",
            nodes=[...],
            edges=[...],
            variables={"style": "studio"},
            settings=PipelineSettings(error_handling="stop"),
        )
    """

    id: str = "pipeline"
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    settings: PipelineSettings = Field(default_factory=PipelineSettings)

    model_config = {"extra": "allow", "frozen": True}
