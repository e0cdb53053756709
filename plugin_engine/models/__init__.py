# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request and response models for the HTTP surface. Separate from the ORM
# models in db/models.py so embeddings and internal columns never leak.
# =============================================================================
