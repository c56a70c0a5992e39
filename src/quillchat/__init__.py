"""quillchat: streaming session state engine for an editor-embedded assistant chat."""

__version__ = "0.1.0"

__all__ = ["__version__"]
