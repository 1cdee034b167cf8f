"""
phaseflow - staged documentation workflow for development phases.

Each phase moves through spec -> research -> plan -> prd -> tasks; a stage
can only be generated once its predecessor is approved.
"""

__version__ = "0.1.0"
