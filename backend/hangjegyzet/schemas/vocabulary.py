from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from hangjegyzet.models.models import TermCategory, TermSource
from hangjegyzet.schemas.base import IdentifiedBase


class VocabularyTermBase(BaseModel):
    """Common vocabulary term attributes"""
    term: str = Field(..., min_length=1, max_length=200)
    variations: List[str] = []
    category: TermCategory = TermCategory.GENERAL
    phonetic_hint: Optional[str] = None
    context_hints: List[str] = []
    language: str = "hu"


class VocabularyTermCreate(VocabularyTermBase):
    """Vocabulary term creation schema"""
    confidence_score: float = Field(0.7, ge=0.0, le=1.0)
    usage_count: int = Field(0, ge=0)
    source: TermSource = TermSource.MANUAL


class VocabularyTermUpdate(BaseModel):
    """Vocabulary term update schema with optional fields"""
    term: Optional[str] = None
    variations: Optional[List[str]] = None
    category: Optional[TermCategory] = None
    phonetic_hint: Optional[str] = None
    context_hints: Optional[List[str]] = None
    language: Optional[str] = None
    confidence_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    usage_count: Optional[int] = Field(None, ge=0)

    model_config = ConfigDict(extra="ignore")


class VocabularyTermRead(VocabularyTermBase, IdentifiedBase):
    """Vocabulary term as stored"""
    organization_id: str
    usage_count: int = 0
    confidence_score: float = 0.7
    source: TermSource = TermSource.MANUAL
    is_active: bool = True
    deactivated_at: Optional[datetime] = None


class TermMatch(BaseModel):
    """A vocabulary match found in a segment"""
    term_id: str
    term: str
    matched_text: str
    match_type: str  # exact | variation | phonetic
    similarity: float
    start: int
    end: int
    accepted: bool
    replaced: bool = False
    reason: Optional[str] = None


class EnhancementResult(BaseModel):
    """Segments after vocabulary enhancement plus the matches behind them"""
    segments: list
    matches: List[TermMatch] = []

    @property
    def replacements(self) -> List[TermMatch]:
        return [m for m in self.matches if m.replaced]


class CorrectionCreate(BaseModel):
    """Human correction submitted for learning"""
    organization_id: str
    original_text: str = Field(..., min_length=1)
    corrected_text: str = Field(..., min_length=1)
    job_id: Optional[str] = None
    user_id: Optional[str] = None
    segment_start: Optional[float] = None


class CorrectionRead(IdentifiedBase):
    """Stored correction record"""
    organization_id: str
    job_id: Optional[str] = None
    user_id: Optional[str] = None
    original_text: str
    corrected_text: str
    segment_start: Optional[float] = None
    wer: Optional[float] = None
    cer: Optional[float] = None


class TermSuggestion(BaseModel):
    """Candidate vocabulary term derived from corrections"""
    term: str
    frequency: int
    confidence: float
    examples: List[str] = []
    auto_learned: bool = False
