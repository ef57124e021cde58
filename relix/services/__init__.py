"""Application services.

Services hold the release logic and coordinate the domain layer (core/)
with infrastructure (git/, platform/). They never print.
"""
