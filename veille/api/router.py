from fastapi import APIRouter

from veille.api.routes import admin, health, questions, search, sources

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sources.router, prefix="/dossiers/{dossier_id}", tags=["sources"])
api_router.include_router(questions.router, prefix="/dossiers/{dossier_id}/questions", tags=["questions"])
api_router.include_router(search.router, prefix="/dossiers/{dossier_id}", tags=["search"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
