"""
SparkyFit Routes Package
"""

from .updates import router as updates_router

__all__ = ['updates_router']
