"""
LLM-backed collaborators for the refinement core.

  - llm:         OpenAI-compatible client with retry and JSON parsing
  - judges:      rubric evaluation (JudgeService)
  - fixer:       section fixes and entailment scoring
  - regenerator: whole-lesson and per-section regeneration
  - factory:     wires the above from Settings
"""
