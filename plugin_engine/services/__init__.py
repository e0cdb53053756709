# =============================================================================
# Services Package — Leaf Capabilities
# =============================================================================
#   - chunker.py: Paragraph/section-aware chunking measured in tiktoken tokens
#   - embedder.py: Batched, atomic embedding generation (sync + async)
#   - vectorstore.py: Plugin-scoped vector store protocol (pgvector, Chroma)
#   - retriever.py: Query → embedding → thresholded top-K search
#   - llm.py: Multi-provider LLM abstraction with timeout + single retry
#   - plugins.py: Plugin/tree lookup and audit record persistence
#   - auth.py: API key hashing
# =============================================================================
