"""relix: resumable multi-branch git release orchestration."""

__version__ = "0.3.0"
