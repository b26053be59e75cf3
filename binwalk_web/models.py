from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class AnalyzeOptions(BaseModel):
    extract: bool = False
    carve: bool = False
    entropy: bool = False
    matryoshka: bool = False
    include: Optional[str] = None  # comma separated signature names
    exclude: Optional[str] = None
    threads: Optional[int] = Field(default=None, gt=0)
    directory: Optional[str] = None
    verbose: bool = False
    quiet: bool = False

    @field_validator(
        "extract", "carve", "entropy", "matryoshka", "verbose", "quiet", mode="before"
    )
    @classmethod
    def _null_is_false(cls, value):
        return False if value is None else value

    @field_validator("include", "exclude", "directory", "threads", mode="before")
    @classmethod
    def _blank_is_absent(cls, value):
        # HTML forms send "" for untouched inputs
        if isinstance(value, str) and not value.strip():
            return None
        return value


class SignatureResult(BaseModel):
    offset: int = Field(ge=0)
    description: str
    size: int = Field(default=0, ge=0)
    id: Optional[str] = None  # key of this signature in the extractions map
    name: Optional[str] = None
    confidence: Optional[int] = None


class Artifact(BaseModel):
    name: str
    size: int
    url: str


class AnalyzeResponse(BaseModel):
    file_map: List[SignatureResult]
    extractions: Dict[str, str] = {}
    artifacts: Dict[str, List[Artifact]] = {}
    entropy: Optional[List[float]] = None


class SignatureInfo(BaseModel):
    name: str
    description: str


class SignatureListResponse(BaseModel):
    signatures: List[SignatureInfo]


class EntropyResponse(BaseModel):
    entropy: List[float]


class HealthResponse(BaseModel):
    status: str
    artifacts: int
    artifact_bytes: int
