"""Scene catalog entries and classifier output."""

from typing import List

from pydantic import BaseModel, Field


class ScenePattern(BaseModel):
    """A predefined situational context, loaded from the scene catalog."""

    name: str
    keywords: List[str] = Field(min_length=1)
    cultural_context: str
    situations: List[str] = Field(default_factory=list)


class SceneCandidate(BaseModel):
    """Ranked hypothesis about the lesson's situational context.

    Computed fresh on every classification; never persisted on its own.
    """

    name: str
    confidence: float = Field(ge=0.0, le=1.0)
    matched_keywords: List[str] = Field(default_factory=list)
    cultural_notes: str = ""
    situations: List[str] = Field(default_factory=list)
    dynamic: bool = False


class SceneAnalysis(BaseModel):
    """Classifier result used to steer script writing and image prompts."""

    primary_scenes: List[SceneCandidate] = Field(default_factory=list)
    secondary_scenes: List[SceneCandidate] = Field(default_factory=list)
    suggested_vocabulary: List[str] = Field(default_factory=list)
    cultural_elements: List[str] = Field(default_factory=list)
    practical_applications: List[str] = Field(default_factory=list)

    @property
    def ranked(self) -> List[SceneCandidate]:
        return [*self.primary_scenes, *self.secondary_scenes]
