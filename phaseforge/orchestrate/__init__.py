"""Orchestration building blocks used by the phase agents."""
