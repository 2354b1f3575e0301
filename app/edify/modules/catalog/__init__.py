"""
Catalog module: books, categories, reviews and book files.
"""
