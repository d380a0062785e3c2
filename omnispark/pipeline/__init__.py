"""
Creative Production Pipeline

Orchestration for:
  Step 1 — Product intake:   brief → product library
  Step 2 — Concept ideation: Gemini text → 3 structured concepts
  Step 3 — Visual design:    main visual → edits → 4-shot storyboard
  Step 4 — Production:       Veo video → local media cache
  History & Library — lineage-tagged artifacts, curated cross-session assets

Import the session from `.orchestrator` and the routers from `.routes`.
"""
