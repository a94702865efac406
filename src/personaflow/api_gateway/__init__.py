"""
API Gateway for personaflow.

Provides HTTP endpoints for:
- Browsing personas, commands and workflows
- Invoking slash commands
- Starting and inspecting workflow runs
"""

from .gateway import APIGateway, create_app

__all__ = ["create_app", "APIGateway"]
