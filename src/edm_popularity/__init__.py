"""EDM Popularity.

Multi-source track identity resolution and popularity scoring. Chart feeds are
merged into one track catalogue in a local SQLite database, and every track
gets a 0-100 popularity score that clients can look up by storefront id or by
title and artist.
"""

__version__ = "0.1.0"
