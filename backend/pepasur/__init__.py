"""Pepasur - orquestador de sesiones de juego y stakes on-chain."""

__version__ = "0.1.0"
