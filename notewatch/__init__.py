"""Background job system for clinical note checks and vital-signs carryforward."""

__version__ = "0.1.0"
