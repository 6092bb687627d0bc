"""Model inference adapters."""

from specflow.llm.base import LLMAdapter
from specflow.llm.gateway import GatewayAdapter
from specflow.llm.router import ModelRouter

__all__ = ["GatewayAdapter", "LLMAdapter", "ModelRouter"]
