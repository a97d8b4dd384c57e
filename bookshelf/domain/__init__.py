"""
Domain layer - Core entities, errors and storage contracts.

This module contains the typed library entities and the abstract
storage interfaces, isolated from any concrete database.
"""
