"""Request dependencies: API key check and access to app-scoped services."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from imagepredictor.config import Settings
    from imagepredictor.ml.inference import ClassificationEngine
    from imagepredictor.ml.model_manager import OnnxModelManager, SharedClassifier
    from imagepredictor.ml.predictor import Predictor

_bearer_scheme = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_predictor(request: Request) -> Predictor:
    predictor: Predictor = request.app.state.predictor
    return predictor


def get_engine(request: Request) -> ClassificationEngine:
    engine: ClassificationEngine = request.app.state.engine
    return engine


def get_classifier(request: Request) -> SharedClassifier:
    classifier: SharedClassifier = request.app.state.classifier
    return classifier


def get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Reject the request unless it carries the configured bearer key.

    Auth is off when IMAGEPREDICTOR_API_KEY is unset.
    """
    expected = get_settings(request).api_key
    if expected is None:
        return

    supplied = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
