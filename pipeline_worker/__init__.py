from .clients import GenerationClient, HttpObjectStorage, LocalObjectStorage
from .worker import PipelineWorker

__all__ = [
    "GenerationClient",
    "HttpObjectStorage",
    "LocalObjectStorage",
    "PipelineWorker",
]
