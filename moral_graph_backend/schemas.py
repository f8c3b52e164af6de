"""Pydantic models describing the structured output expected from each LLM call."""
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional


class ValueClusters(BaseModel):
    groups: List[List[int]] = Field(
        description="Groups of value ids; ids in one group express the same value"
    )


class RepresentativeChoice(BaseModel):
    id: int = Field(description="Id of the most complete, well-formed value in the cluster")


class DuplicateChoice(BaseModel):
    duplicate_id: Optional[int] = Field(
        default=None,
        description="Id of the existing value that is the same value as the candidate, or null",
    )


class ProposedUpgrade(BaseModel):
    from_id: int
    to_id: int
    story: str

    @field_validator("story")
    @classmethod
    def story_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("story must not be empty")
        return value.strip()


class UpgradeProposals(BaseModel):
    upgrades: List[ProposedUpgrade] = Field(default_factory=list)


class ReverseUpgradeJudgment(BaseModel):
    plausible: bool
    story: str = ""


class ContextGroups(BaseModel):
    groups: List[List[str]] = Field(
        description="Groups of contexts, written exactly as given, that mean the same thing"
    )
