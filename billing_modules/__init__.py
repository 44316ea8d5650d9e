"""
Billing Modules.

Thin orchestration layers over the Billing Kernel and Engines.
Each module contains:
- Domain models (the nouns)
- Configuration schemas (per-case policy)
- Collaborator protocols and reference SQLAlchemy adapters
- A service facade owning the orchestration of one use case

Modules:
- Stage billing: milestone graphs per case phase, completion, invoicing,
  progress, suggestions and automation

Actual processing logic lives in the engines.
"""
