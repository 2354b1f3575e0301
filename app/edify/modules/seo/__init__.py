"""
SEO module: per-page settings with built-in defaults, redirects, page-view
analytics, sitemap and robots.txt.
"""
