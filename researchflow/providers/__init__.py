"""Chat-completion provider clients."""

from researchflow.providers.base import BaseChatProvider
from researchflow.providers.openai_compat import OpenAICompatibleProvider

__all__ = ["BaseChatProvider", "OpenAICompatibleProvider"]
