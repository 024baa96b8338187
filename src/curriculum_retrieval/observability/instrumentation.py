"""
OpenInference Auto-Instrumentation

Registers the OpenAI auto-instrumentor so embedding calls show up as spans
without code changes.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

_instrumented = False


def register_instrumentors() -> bool:
    """
    Register OpenInference auto-instrumentors.

    This should be called once at startup, before any embedding calls.

    Returns:
        True if the OpenAI instrumentor was registered, False otherwise
    """
    global _instrumented
    if _instrumented:
        return True

    try:
        from openinference.instrumentation.openai import OpenAIInstrumentor
        OpenAIInstrumentor().instrument()
    except ImportError:
        logger.debug("OpenAI instrumentor not available")
        return False
    except Exception as e:
        logger.warning(f"Failed to instrument OpenAI: {e}")
        return False

    logger.info("Registered instrumentors: openai")
    _instrumented = True
    return True
