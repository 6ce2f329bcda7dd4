"""
Memory services: embeddings, retrieval, classification and persistence.
"""
