CATALOG_FILE_NAME = "models.json"
TEMP_SUFFIX = ".tmp"

# Observed size may differ from the declared one by this fraction.
SIZE_TOLERANCE = 0.01

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 2.0

DEFAULT_CONTEXT_SIZE = 2048
PARALLEL_CONTEXT_SIZE = 1024

MAX_REDIRECTS = 10
PROGRESS_STEP_PERCENT = 5
DOWNLOAD_CHUNK_SIZE = 1024 * 1024

USER_AGENT = "gguflab/0.1"

ERROR_PREFIX = "Error: "

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Provide clear, concise, and helpful responses."
)

BENCHMARK_PROMPTS = (
    "What is 2+2?",
    "Write a haiku about coding",
    "Explain recursion in one sentence",
)
