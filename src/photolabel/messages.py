"""User-visible strings (French)."""

from __future__ import annotations

NO_PREDICTION = "Aucune prédiction"
PREDICTION_ERROR = "Erreur lors de la prédiction"

MODEL_LOAD_FAILED = "Échec du chargement du modèle"
CLASSIFICATION_FAILED = "Erreur lors de la classification"

LOADING_MODEL = "Chargement du modèle…"
CLASSIFYING = "Analyse…"
