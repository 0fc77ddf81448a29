"""OpenAI-compatible gateway in front of Azure OpenAI chat and Responses deployments."""

__version__ = "0.5.0"
