"""voxinkd: push-to-talk dictation daemon with LLM refinement."""

__version__ = "0.1.0"
