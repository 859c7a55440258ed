"""
Lesson Refinery — multi-judge evaluation and targeted refinement of
generated lesson content.

Layout:
  - refinery.core.*     (aggregation, routing, fix execution, convergence)
  - refinery.services.* (LLM-backed judges, fixer, entailment, regenerator)
  - refinery.api.*      (FastAPI routes)
  - refinery.models.*   (Pydantic domain models)

The core never imports from services or api; services are passed in.
"""

__version__ = "0.1.0"
