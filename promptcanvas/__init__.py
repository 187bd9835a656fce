"""
PromptCanvas - conversational image generation with a local conversation store.
"""

__version__ = "0.1.0"
