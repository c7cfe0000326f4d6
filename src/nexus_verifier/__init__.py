"""
nexus-verifier: sandboxed verification and reduction engine.

Runs untrusted code in isolation behind a content-addressed result cache, maps
stack traces to likely source locations, shrinks failing inputs with ddmin, and
verifies candidate patches with a confidence score.

Importing the package has no side effects; use ``nexus_verifier.engine`` for
the composed runtime and ``nexus_verifier.main`` for the CLI.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
