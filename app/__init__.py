"""
FastAPI application for ChatRecall.
"""
