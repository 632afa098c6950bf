from typing import Any, List, Optional

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile, status

from hangjegyzet.api.deps import get_vocabulary
from hangjegyzet.core.exceptions import ValidationError
from hangjegyzet.models.models import TermCategory
from hangjegyzet.schemas.vocabulary import (
    TermSuggestion, VocabularyTermCreate, VocabularyTermRead, VocabularyTermUpdate,
)
from hangjegyzet.services.vocabulary_service import VocabularyService

router = APIRouter()


@router.get("/{organization_id}/vocabulary", response_model=List[VocabularyTermRead])
async def list_terms(
        organization_id: str,
        category: Optional[TermCategory] = None,
        include_inactive: bool = False,
        vocabulary: VocabularyService = Depends(get_vocabulary),
) -> Any:
    """
    List vocabulary terms, most used first.
    """
    return await vocabulary.list_terms(organization_id, category=category, include_inactive=include_inactive)


@router.post(
    "/{organization_id}/vocabulary",
    response_model=VocabularyTermRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_term(
        organization_id: str,
        term_in: VocabularyTermCreate,
        vocabulary: VocabularyService = Depends(get_vocabulary),
) -> Any:
    return await vocabulary.add_term(organization_id, term_in)


@router.patch("/{organization_id}/vocabulary/{term_id}", response_model=VocabularyTermRead)
async def update_term(
        organization_id: str,
        term_id: str,
        term_in: VocabularyTermUpdate,
        vocabulary: VocabularyService = Depends(get_vocabulary),
) -> Any:
    await vocabulary.get_term(organization_id, term_id)
    return await vocabulary.update_term(term_id, term_in)


@router.delete("/{organization_id}/vocabulary/{term_id}", response_model=VocabularyTermRead)
async def delete_term(
        organization_id: str,
        term_id: str,
        vocabulary: VocabularyService = Depends(get_vocabulary),
) -> Any:
    """
    Deactivate a term. It stays in storage for reporting.
    """
    await vocabulary.get_term(organization_id, term_id)
    return await vocabulary.delete_term(term_id)


@router.post("/{organization_id}/vocabulary/import", response_model=List[VocabularyTermRead])
async def import_terms(
        organization_id: str,
        file: UploadFile = File(...),
        category: TermCategory = TermCategory.CUSTOM,
        language: str = "hu",
        vocabulary: VocabularyService = Depends(get_vocabulary),
) -> Any:
    """
    Import terms from a CSV file with a 'term' column.

    Optional columns: variations, category, phonetic_hint, context_hints,
    usage_count, confidence_score. List columns are ';'-separated.
    """
    raw = await file.read()
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError("CSV file must be UTF-8 encoded", code="invalid_csv") from e
    return await vocabulary.import_csv(organization_id, content, default_category=category, language=language)


@router.get("/{organization_id}/vocabulary/export")
async def export_terms(
        organization_id: str,
        category: Optional[TermCategory] = None,
        vocabulary: VocabularyService = Depends(get_vocabulary),
) -> Response:
    content = await vocabulary.export_csv(organization_id, category=category)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="vocabulary_{organization_id}.csv"'},
    )


@router.get("/{organization_id}/vocabulary/suggestions", response_model=List[TermSuggestion])
async def get_suggestions(organization_id: str, vocabulary: VocabularyService = Depends(get_vocabulary)) -> Any:
    """
    Candidate terms that human corrections keep introducing.
    """
    return await vocabulary.suggestions(organization_id)


@router.post("/{organization_id}/vocabulary/seed")
async def seed_terms(
        organization_id: str,
        language: str = Query("hu"),
        vocabulary: VocabularyService = Depends(get_vocabulary),
) -> Any:
    added = await vocabulary.seed_defaults(organization_id, language=language)
    return {"organization_id": organization_id, "added": added}
