"""
buildloop — domain layer

File: src/buildloop/domain/__init__.py

Purpose
- Domain types shared across planes: BuildExecution, PhaseRun, BuildSpec,
  QAReport, ToolArtifact and phase events.

Rules
- Keep the domain layer free of IO side effects.
- Domain objects must be serializable and versioned.
"""
