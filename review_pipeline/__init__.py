"""Webhook-driven AI code review pipeline for GitHub and GitLab."""

__version__ = "0.1.0"
