"""Ayudas de IA: predicción de mantenimiento e imagen de un vehículo.

Ambas llamadas van a un servicio externo configurado con ``AI_SERVICE_URL``.
Sin reintentos: un fallo se devuelve al usuario como error 502.
"""
import logging
from typing import Optional

import httpx
from pydantic import Field, ValidationError

from config import AI_SERVICE_KEY, AI_SERVICE_URL, AI_TIMEOUT_SECONDS
from errors import ExternalServiceError
from schemas import CamelModel

logger = logging.getLogger(__name__)

PREDICTION_ERROR = "Erreur d'API : Impossible d'obtenir la prédiction de l'entretien."
IMAGE_ERROR = "Erreur d'API : Impossible de générer l'image de la voiture."

MAINTENANCE_PROMPT = """You are an expert car mechanic specializing in predicting car maintenance needs.

You will use the car's usage data and historical maintenance data to predict if the car needs maintenance.

Usage Data: {usage_data}
Historical Maintenance Data: {historical_data}

Consider the following:
- Common issues for the car's make and model
- The severity of the usage data
- The recency of the historical maintenance data

Based on this information, determine if the car needs maintenance, the reason why, suggested maintenance tasks, how urgent the maintenance is, and the estimated cost.
Set the needsMaintenance field appropriately.

Return the data as a JSON object with the keys needsMaintenance, reason, suggestedMaintenanceTasks, urgency and estimatedCost."""

CAR_IMAGE_PROMPT = (
    "Generate a photorealistic image of a {couleur} {marque} {modele} from the year {annee}. "
    "The car should be the main subject, clean, and parked in a neutral, outdoor setting like a "
    "clean parking lot or a modern street during the day. The image should look like a "
    "professional photograph for a car rental website."
)


class MaintenancePredictionInput(CamelModel):
    car_id: Optional[int] = None
    usage_data: str = Field(..., min_length=10)
    historical_maintenance_data: str = Field(..., min_length=10)

class MaintenancePredictionOutput(CamelModel):
    needs_maintenance: bool
    reason: str
    suggested_maintenance_tasks: str
    urgency: str
    estimated_cost: float

class CarImageInput(CamelModel):
    marque: str = Field(..., min_length=1)
    modele: str = Field(..., min_length=1)
    annee: int = Field(..., ge=1950, le=2100)
    couleur: str = Field(..., min_length=1)

class CarImageOutput(CamelModel):
    image_url: str


class AIClient:
    def __init__(self, base_url: str = AI_SERVICE_URL, api_key: str = AI_SERVICE_KEY,
                 timeout: float = AI_TIMEOUT_SECONDS, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _post(self, path: str, payload: dict, error_message: str) -> dict:
        if not self.base_url:
            logger.error("AI_SERVICE_URL non configuré")
            raise ExternalServiceError(error_message)
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout,
                              transport=self.transport) as client:
                response = client.post(path, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Appel au service IA %s échoué : %s", path, exc)
            raise ExternalServiceError(error_message) from exc

    def predict_maintenance(self, data: MaintenancePredictionInput) -> MaintenancePredictionOutput:
        prompt = MAINTENANCE_PROMPT.format(
            usage_data=data.usage_data,
            historical_data=data.historical_maintenance_data,
        )
        body = self._post("/generate", {"prompt": prompt, "format": "json"}, PREDICTION_ERROR)
        try:
            return MaintenancePredictionOutput.model_validate(body.get("output", body))
        except (ValidationError, AttributeError) as exc:
            logger.error("Réponse de prédiction invalide : %s", exc)
            raise ExternalServiceError(PREDICTION_ERROR) from exc

    def generate_car_image(self, data: CarImageInput) -> CarImageOutput:
        prompt = CAR_IMAGE_PROMPT.format(**data.model_dump())
        body = self._post("/images", {"prompt": prompt}, IMAGE_ERROR)
        image_url = body.get("imageUrl") or body.get("url") if isinstance(body, dict) else None
        if not image_url:
            logger.error("Le service IA n'a pas renvoyé d'image")
            raise ExternalServiceError(IMAGE_ERROR)
        return CarImageOutput(image_url=image_url)


def get_ai_client() -> AIClient:
    return AIClient()
