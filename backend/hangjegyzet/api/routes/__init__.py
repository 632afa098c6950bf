from fastapi import APIRouter

from hangjegyzet.api.routes import (
    accuracy, admission, corrections, organizations, transcriptions, vocabulary
)

# Create main API router
api_router = APIRouter()

# Include all route modules
api_router.include_router(admission.router, prefix="/admission", tags=["admission"])
api_router.include_router(organizations.router, prefix="/organizations", tags=["organizations"])
api_router.include_router(vocabulary.router, prefix="/organizations", tags=["vocabulary"])
api_router.include_router(transcriptions.router, prefix="/transcriptions", tags=["transcriptions"])
api_router.include_router(corrections.router, prefix="/corrections", tags=["corrections"])
api_router.include_router(accuracy.router, prefix="/accuracy", tags=["accuracy"])
