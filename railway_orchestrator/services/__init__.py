"""
Services Module

Key Submodules:
- command_validator: closed set of Railway CLI commands
- retry_config: transient failure classification and retry policy
- deployment: CLI executor, event publisher and deployment orchestrator

Usage:
    from railway_orchestrator.services.deployment import DeploymentOrchestrator
"""
