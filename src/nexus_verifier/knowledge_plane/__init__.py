"""Knowledge-plane public API: trace parsing, repository context, correlation."""

from nexus_verifier.knowledge_plane.correlator import (
    CorrelatorConfig,
    CorrelatorWeights,
    StacktraceCorrelator,
)
from nexus_verifier.knowledge_plane.repository import (
    CodeChunk,
    CodeLookupService,
    IndexedFile,
    RepositoryIndex,
    StaticCodeLookup,
)
from nexus_verifier.knowledge_plane.trace_parsing import (
    ParsedTrace,
    StackFrame,
    TraceLanguage,
    detect_language,
    parse_stacktrace,
)

__all__ = [
    "CodeChunk",
    "CodeLookupService",
    "CorrelatorConfig",
    "CorrelatorWeights",
    "IndexedFile",
    "ParsedTrace",
    "RepositoryIndex",
    "StackFrame",
    "StacktraceCorrelator",
    "StaticCodeLookup",
    "TraceLanguage",
    "detect_language",
    "parse_stacktrace",
]
