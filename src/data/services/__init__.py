"""Couche services: calculs en lecture seule sur les données synchronisées.

Contrat :
- Les services accèdent au repository, jamais à l'API Riot.
- Les retours sont typés (dataclasses) avec docstrings FR.
"""

from src.data.services.synergy_service import SynergyPair, SynergyReport, compute_synergy_pairs

__all__ = [
    "SynergyPair",
    "SynergyReport",
    "compute_synergy_pairs",
]
