"""
Support for writing scripts using bibsync.

The expected usage of core bibsync types is like:

    from bibsync import BibSyncPipeline

The scripting package is not part of the core library and contains
optional extensions, used as follows:

    from bibsync.scripting import bib_logging

Each module whose name starts with `bib_` in this package is an
independent extension module.
"""
