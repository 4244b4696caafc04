"""
Civitai Mirror - Test Helpers

Provides utilities for testing:
- Fake Civitai client
- Catalog payload builders
- On-disk mirror builder
"""
