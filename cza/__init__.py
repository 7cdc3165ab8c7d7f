"""cza -- create-zk-app.

Scaffolds zero-knowledge application projects from curated templates and
drives the post-generation setup (git, ``mise install``, ``hk install``,
editor).  The ``update`` command replaces the installed executable with the
latest verified release.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
