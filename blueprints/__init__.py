"""
Blueprints package for the Matchday application
Contains the JSON route blueprints over the match lifecycle
"""

from .auth import auth_bp
from .matches import matches_bp, requests_bp
from .notifications import notifications_bp
from .team import team_bp

__all__ = ['auth_bp', 'matches_bp', 'requests_bp', 'notifications_bp', 'team_bp']
