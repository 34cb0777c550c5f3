"""
Speech synthesis pipeline package.

This package contains the modules between the model token stream and the
client:

- text_segmenter: Splits streamed model text into speakable fragments
- delivery: Synthesizes fragments concurrently and forwards them in order

Architecture Overview:

    ┌─────────────┐     ┌────────────────────┐     ┌───────────────────────────┐
    │ LLM Stream  │────▶│ ResponseFragmenter │────▶│ OrderedSynthesisDelivery  │
    └─────────────┘     └────────────────────┘     └───────────────────────────┘
                                                       │     │     │
                                                       ▼     ▼     ▼
                                                    synthesis tasks (parallel)
                                                               │
                                                               ▼
                                                    ┌──────────────────────┐
                                                    │ in-order tts_chunk   │
                                                    └──────────────────────┘
"""

from .delivery import FragmentStatus, OrderedSynthesisDelivery, ResponseFragment
from .text_segmenter import ResponseFragmenter

__all__ = [
    "FragmentStatus",
    "OrderedSynthesisDelivery",
    "ResponseFragment",
    "ResponseFragmenter",
]
