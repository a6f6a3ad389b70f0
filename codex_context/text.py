"""Centralized user-facing text for codex-context."""

from __future__ import annotations

class Styles:
    ERROR = "red"
    WARNING = "yellow"
    SUCCESS = "green"
    INFO = "dim"
    TITLE = "bold cyan"
    TABLE_HEADER = "bold magenta"


class Messages:
    APP_HELP = "codex-context – index a codebase into semantic chunks and search it."
    HELP_INDEX_PATH = "Root directory of the codebase to index."
    HELP_INDEX_FORCE = "Ignore the incremental snapshot and rebuild the whole index."
    HELP_INDEX_INCLUDE_HIDDEN = "Include hidden files and directories."
    HELP_RESPECT_GITIGNORE = "Do not apply .gitignore rules when discovering files."
    HELP_EXTENSIONS = "Only index files with these extensions (repeatable)."
    HELP_QUERY = "Natural-language query or identifier to look for."
    HELP_SEARCH_PATH = "Root directory of an indexed codebase."
    HELP_SEARCH_LIMIT = "Number of results to display."
    HELP_SEARCH_STRATEGY = "Search strategy: semantic, hybrid or structural."
    HELP_SEARCH_MIN_SCORE = "Drop results scoring below this value."
    HELP_SEARCH_CONTEXT = "Lines of surrounding source to attach to each result."
    HELP_SEARCH_NO_RERANK = "Skip the configured reranker."
    HELP_SEARCH_NO_EXPAND = "Skip dependency expansion."
    HELP_SEARCH_FORMAT = "Output format: rich or json."
    HELP_STATUS = "Show indexed codebases and incremental index statistics."
    HELP_CLEAR = "Remove the index, snapshot and registry entry of a codebase."
    HELP_CONFIG_SET = "Set a config value, e.g. --set provider=openai (repeatable)."
    HELP_CONFIG_SHOW = "Show current configuration."
    HELP_LOG_LEVEL = "Logging level written to stderr (DEBUG, INFO, WARNING, ERROR)."

    ERROR_API_KEY_MISSING = (
        "Embedding API key is missing. Configure it via "
        "`codex-context config --set api_key=<token>` or the "
        "CODEX_CONTEXT_API_KEY / JINA_API_KEY / OPENAI_API_KEY environment variables."
    )
    ERROR_OPENAI_PREFIX = "Embedding API request failed: "
    ERROR_NO_EMBEDDINGS = "Embedding API returned no embeddings."
    ERROR_EMBEDDING_COUNT = "Embedding API returned {actual} vectors for {expected} inputs."
    ERROR_PROVIDER_INVALID = "Unsupported provider '{value}'. Allowed values: {allowed}."
    ERROR_CUSTOM_BASE_URL_REQUIRED = "Custom provider requires a base_url."
    ERROR_STORE_INVALID = "Unsupported vector store '{value}'. Allowed values: {allowed}."
    ERROR_TURBOPUFFER_KEY_MISSING = (
        "Turbopuffer API key is missing. Set TURBOPUFFER_API_KEY or "
        "`codex-context config --set turbopuffer_api_key=<token>`."
    )
    ERROR_STORE_REQUEST_FAILED = "Vector store request failed: {reason}"
    ERROR_REMOTE_RERANK_INCOMPLETE = (
        "Remote rerank requires an API key. Set CODEX_CONTEXT_RERANK_API_KEY or JINA_API_KEY."
    )
    ERROR_REMOTE_RERANK_FAILED = "Remote rerank request failed: {reason}"
    ERROR_FLASHRANK_MISSING = (
        "FlashRank is not installed. Install with `pip install \"codex-context[flashrank]\"`."
    )
    ERROR_CONFIG_JSON_INVALID = "Config file must contain a JSON object."
    ERROR_CONFIG_UNKNOWN_KEY = "Unknown config key: {key}"
    ERROR_CONFIG_VALUE_INVALID = "Invalid value for config field '{field}'."
    ERROR_CONFIG_CHOICE_INVALID = (
        "Invalid value '{value}' for '{field}'. Allowed values: {allowed}."
    )
    ERROR_CONFIG_ASSIGNMENT = "Expected KEY=VALUE, got '{value}'."
    ERROR_EMPTY_QUERY = "Query text must not be empty."
    ERROR_STRATEGY_INVALID = "Unsupported strategy '{value}'. Allowed values: {allowed}."
    ERROR_CODEBASE_NOT_INDEXED = (
        "Codebase not indexed: {path}. Run `codex-context index --path \"{path}\"` first."
    )
    ERROR_NO_INDEXED_CODEBASES = "No indexed codebases available."
    ERROR_SEARCH_FAILED = "Search failed: {reason}"
    ERROR_INDEX_FAILED = "Indexing failed: {reason}"
    ERROR_LOCK_HELD = "Operation already in progress (started {minutes} minutes ago)"
    ERROR_UPLOAD_BATCH = "Upload batch {batch} failed: {reason}"
    ERROR_DELETE_STALE = "Could not delete stale chunks: {reason}"
    ERROR_REGISTRY_BUSY = "Timed out waiting for the codebase registry lock."
    ERROR_READ_FAILED = "Unable to read file: {reason}"

    PARSE_FALLBACK = "Fallback chunking used"
    PARSE_FAILED = "AST parsing failed: {reason}"
    PARSE_WINDOW_FAILED = "Window at line {line} failed: {reason}"
    PARSE_NO_GRAMMAR = "No syntax tree grammar for {language}; line chunking used"

    INFO_LOCK_ACQUIRED = "Lock acquired"
    INFO_NO_FILES = "No source files found under {path}."
    INFO_NO_CHANGES = "No files changed since last indexing."
    INFO_INDEX_RUNNING = "Indexing {path}..."
    INFO_INDEX_DONE = "Indexed {files} file{plural} ({created} chunks created, {deleted} removed)."
    INFO_INDEX_TIME = "Finished in {ms} ms."
    INFO_INDEX_PARTIAL = "{count} file{plural} failed; they will be retried on the next run."
    INFO_SEARCH_RUNNING = "Searching {path}..."
    INFO_NO_RESULTS = "No matching code found."
    INFO_SUGGESTIONS = "Try: {queries}"
    INFO_INDEX_CLEARED = "Removed index for {path}."
    INFO_INDEX_CLEAR_NONE = "No index found for {path}."
    INFO_STATUS_EMPTY = "No codebases indexed yet."
    INFO_CONFIG_SAVED = "Configuration saved."
    WARNING_RERANK_FAILED = "Reranking failed, keeping original order: {reason}"

    TABLE_TITLE = "codex-context search results"
    TABLE_HEADER_INDEX = "#"
    TABLE_HEADER_SCORE = "Score"
    TABLE_HEADER_LOCATION = "Location"
    TABLE_HEADER_TYPE = "Match"
    TABLE_HEADER_SYMBOLS = "Symbols"
    STATUS_TITLE = "Indexed codebases"
    STATUS_HEADER_PATH = "Path"
    STATUS_HEADER_NAMESPACE = "Namespace"
    STATUS_HEADER_CHUNKS = "Chunks"
    STATUS_HEADER_INDEXED = "Indexed at"
    STATUS_HEADER_STATE = "State"
