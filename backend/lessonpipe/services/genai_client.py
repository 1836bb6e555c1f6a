"""google-genai client construction.

Clients are built explicitly and passed to the capabilities that need them;
nothing here is cached at module level.

Usage:
    from lessonpipe.services.genai_client import build_genai_client

    client = build_genai_client(settings)
"""

from pathlib import Path

from dotenv import load_dotenv
from google import genai
from google.genai.errors import ClientError, ServerError

from lessonpipe.config import Settings

# Load .env for GOOGLE_APPLICATION_CREDENTIALS (ADC)
load_dotenv(Path(__file__).resolve().parent.parent.parent.parent / ".env")


def build_genai_client(settings: Settings) -> genai.Client:
    """Create a client for the Gemini Developer API or Vertex AI.

    Vertex AI (Application Default Credentials) is used when
    ``google_cloud.use_vertex_ai`` is set; otherwise an API key is required.

    Raises:
        RuntimeError: If neither an API key nor a Vertex AI project is configured.
    """
    gc = settings.google_cloud
    if gc.use_vertex_ai:
        if not gc.project_id:
            raise RuntimeError("google_cloud.project_id is required when use_vertex_ai is set")
        return genai.Client(vertexai=True, project=gc.project_id, location=gc.location)
    if not gc.api_key:
        raise RuntimeError(
            "No Gemini credentials configured. Set LESSONPIPE_GOOGLE_CLOUD__API_KEY "
            "or enable google_cloud.use_vertex_ai with a project_id."
        )
    return genai.Client(api_key=gc.api_key)


def is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying."""
    if isinstance(exc, ServerError):
        return True
    if isinstance(exc, ClientError):
        return getattr(exc, "code", 0) == 429
    # Retry on connection/timeout errors
    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        return True
    return False
