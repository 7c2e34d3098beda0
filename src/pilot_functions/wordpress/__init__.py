"""
WordPress sync — mirrors community and home custom post types into the
``locations`` and ``properties`` tables.
"""
