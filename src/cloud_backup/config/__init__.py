"""Configuration management for the backup application."""

from .settings import AppSettings, CognitoSettings

__all__ = ["AppSettings", "CognitoSettings"]
