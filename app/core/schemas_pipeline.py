"""Pydantic schemas for the S1-S6 content-generation pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Stage identity and status
# =============================================================================


class StageId(str, Enum):
    """Pipeline stage, totally ordered S1 < S2 < ... < S6."""

    S1 = "s1"
    S2 = "s2"
    S3 = "s3"
    S4 = "s4"
    S5 = "s5"
    S6 = "s6"

    @property
    def ordinal(self) -> int:
        return int(self.value[1:])

    @property
    def data_key(self) -> str:
        """Request/response key for this stage's payload, e.g. ``s2Data``."""
        return f"{self.value}Data"

    @property
    def label(self) -> str:
        return self.value.upper()

    def __lt__(self, other: "StageId") -> bool:
        if not isinstance(other, StageId):
            return NotImplemented
        return self.ordinal < other.ordinal

    @classmethod
    def parse(cls, value: str) -> "StageId":
        """Parse ``s3`` / ``S3`` / ``3``; raises ValueError on anything else."""
        text = str(value).strip().lower()
        if text.isdigit():
            text = f"s{text}"
        return cls(text)


class StageStatus(str, Enum):
    LOCKED = "locked"
    READY = "ready"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


class GenerationMode(str, Enum):
    SINGLE_SHOT = "single_shot"
    STREAMING = "streaming"


class StageRecord(BaseModel):
    """Status snapshot for one (project, stage) pair."""

    stage: StageId
    status: StageStatus
    file_path: str | None = Field(None, description="Storage path of the persisted artifact")
    generated_at: str | None = Field(None, description="Completion timestamp")
    error: str | None = Field(None, description="Last failure message")
    progress: int = Field(0, ge=0, le=100, description="Generation progress percentage")
    output: Any = Field(None, description="Stage output, present only when completed")


# =============================================================================
# Stage output shapes (one variant per StageId)
# =============================================================================


class _Permissive(BaseModel):
    """LLM-authored objects keep every key they arrive with."""

    model_config = ConfigDict(extra="allow")


class SurveyData(_Permissive):
    """S1: client survey submitted through the intake form."""

    businessName: str = Field(..., min_length=1)
    industry: str = Field(..., min_length=1)
    contactName: str | None = None
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    businessDescription: str | None = None
    targetAudience: Any = None
    uniqueSellingPoints: list[str] = Field(default_factory=list)
    competitors: list[Any] = Field(default_factory=list)
    primaryGoals: list[str] = Field(default_factory=list)
    timeline: str | None = None
    budget: str | None = None
    interestedServices: list[str] = Field(default_factory=list)
    preferredContentTypes: list[str] = Field(default_factory=list)
    tonePreference: str | None = None
    existingAssets: str | None = None
    additionalInfo: str | None = None
    submittedAt: str | None = None


class PresentationMetadata(_Permissive):
    businessName: str
    industry: str | None = None
    location: str | None = None
    generatedDate: str | None = None
    estimatedVideoDuration: str | None = None
    targetAudience: str | None = None


class PresentationSection(_Permissive):
    purpose: str | None = None
    duration: str | None = None
    scriptLanguage: str | None = None
    visualDirection: str | None = None


class Citation(_Permissive):
    statistic: str | None = None
    source: str | None = None
    year: str | None = None
    url: str | None = None
    usedInSection: str | None = None


class PresentationData(_Permissive):
    """S2: narrative video presentation built from the survey."""

    presentationMetadata: PresentationMetadata
    styleProfile: dict[str, Any] = Field(default_factory=dict)
    section1_openingHook: PresentationSection
    section2_businessContext: PresentationSection
    section3_currentReality: PresentationSection
    section4_theOpportunity: PresentationSection
    section5_electricStudioSolution: PresentationSection
    section6_whatTheyGet: PresentationSection
    section7_successVision: PresentationSection
    section8_nextSteps: PresentationSection
    citations: list[Citation] = Field(default_factory=list)


class StockAsset(_Permissive):
    assetId: str = Field(..., min_length=1)
    assetType: str | None = None
    originalPrompt: str | None = None
    scriptContext: str | None = None
    searches: dict[str, list[str]] = Field(default_factory=dict)
    selectionCriteria: list[str] = Field(default_factory=list)
    backupOptions: list[str] = Field(default_factory=list)


class StockLibraryData(_Permissive):
    """S5: stock-library search keywords for every asset in the S3 package."""

    projectName: str | None = None
    clientPrefix: str | None = None
    generatedAt: str | None = None
    assets: list[StockAsset]
    platformRecommendations: dict[str, Any] = Field(default_factory=dict)
    downloadChecklist: list[dict[str, Any]] = Field(default_factory=list)
    fileOrganization: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# API requests / responses
# =============================================================================


class CreatePipelineProjectRequest(BaseModel):
    projectName: str = Field(..., min_length=1, max_length=200)
    clientName: str = Field(..., min_length=1, max_length=200)
    surveyData: dict[str, Any] = Field(..., description="S1 survey JSON")


class ClearStageRequest(BaseModel):
    stage: str


class ClearStageResponse(BaseModel):
    success: bool = True
    cleared: list[str]


class UploadStageRequest(BaseModel):
    stage: str
    content: str


class UploadStageResponse(BaseModel):
    success: bool = True


class PipelineProjectSummary(BaseModel):
    id: str
    projectName: str
    clientName: str
    status: Literal["in_progress", "completed"]
    currentStage: int
    createdAt: str | None = None
    updatedAt: str | None = None


class PipelineStateResponse(BaseModel):
    project: PipelineProjectSummary
    stages: list[StageRecord]
    checked_at: datetime = Field(default_factory=datetime.utcnow)
