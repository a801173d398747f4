"""PhaseForge: phased agent orchestration for model-driven code generation."""

__version__ = "0.1.0"
