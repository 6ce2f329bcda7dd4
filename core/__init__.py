"""
ChatRecall core: configuration, models and memory services.
"""
