"""
Live chat routing between customers, an AI assistant and human support agents.
"""
