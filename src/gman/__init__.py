"""
gman: fetch, cache, install and remove CI-built products.
"""
