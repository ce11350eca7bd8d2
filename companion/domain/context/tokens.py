"""
Token estimation using tiktoken.
Falls back to a length/4 estimate when the encoding cannot be loaded.
"""
from typing import Optional
import math
import structlog
import tiktoken

logger = structlog.get_logger(__name__)

DEFAULT_ENCODING = "cl100k_base"


class TokenCounter:
    """Token counting with a character-based fallback"""

    def __init__(self, encoding_name: str = DEFAULT_ENCODING):
        self.encoding_name = encoding_name
        self._encoding = None
        self._load_failed = False

    def _get_encoding(self):
        if self._encoding is None and not self._load_failed:
            try:
                self._encoding = tiktoken.get_encoding(self.encoding_name)
            except Exception as e:
                # Offline hosts cannot download the BPE file
                logger.warning("Failed to load tiktoken encoding", encoding=self.encoding_name, error=str(e))
                self._load_failed = True
        return self._encoding

    def count(self, text: Optional[str]) -> int:
        if not text:
            return 0
        encoding = self._get_encoding()
        if encoding is None:
            return math.ceil(len(text) / 4)
        try:
            return len(encoding.encode(text))
        except Exception as e:
            logger.warning("Token counting error", error=str(e))
            return math.ceil(len(text) / 4)
