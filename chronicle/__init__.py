"""Chronicle: resumable job orchestration for long-running book generation."""

__version__ = "0.1.0"
