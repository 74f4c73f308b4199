"""pactum: versionable legal contracts.

Template resolution (local files, URLs and repository locations) with an
on-disk cache, content-hash pinning, and detached signatures over contract
bytes.
"""

__version__ = "0.1.0"
