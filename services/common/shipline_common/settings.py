import os, json, shlex

from .schemas import PipelineConfig, RetryPolicy, StageSpec

DB_PATH = os.environ.get("SHIPLINE_DB_PATH", "/data/shipline.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://redis:6379/0")
QUEUE_NAME = os.environ.get("SHIPLINE_QUEUE", "shipline")
SECRETS_DIR = os.environ.get("SECRETS_DIR", "/secrets")
API_KEY_FILE = os.environ.get("SHIPLINE_API_KEY_FILE", f"{SECRETS_DIR}/shipline_api_key.txt")
GIT_TOKEN_FILE = os.environ.get("GITHUB_TOKEN_FILE", f"{SECRETS_DIR}/github_pat.txt")

WORKSPACES_ROOT = os.environ.get("WORKSPACES_ROOT", "/workspaces")
ARTIFACT_ROOT = os.environ.get("SHIPLINE_ARTIFACT_ROOT", "/data/shipline/runs")
PIPELINE_FILE = os.environ.get("SHIPLINE_PIPELINE_FILE", "")

# application unit
APP_REPO_URL = os.environ.get("SHIPLINE_APP_REPO_URL", "")
APP_SOURCE_DIR = os.environ.get("SHIPLINE_APP_SOURCE_DIR", "")
APP_BUILD_CMD = shlex.split(os.environ.get("SHIPLINE_APP_BUILD_CMD", "make build"))
APP_TEST_CMD = shlex.split(os.environ.get("SHIPLINE_APP_TEST_CMD", "make test"))
APP_OUTPUT_DIR = os.environ.get("SHIPLINE_APP_OUTPUT_DIR", ".")
APP_CMD_TIMEOUT = int(os.environ.get("SHIPLINE_APP_CMD_TIMEOUT", "900"))

# container registry
REGISTRY_URL = os.environ.get("SHIPLINE_REGISTRY_URL", "https://registry.localhost:5000")
REGISTRY_REPOSITORY = os.environ.get("SHIPLINE_REGISTRY_REPOSITORY", "app/web")
REGISTRY_USERNAME = os.environ.get("SHIPLINE_REGISTRY_USERNAME", "")
REGISTRY_PASSWORD_FILE = os.environ.get("SHIPLINE_REGISTRY_PASSWORD_FILE", f"{SECRETS_DIR}/registry_password.txt")
TAG_PREFIX = os.environ.get("SHIPLINE_TAG_PREFIX", "")

# configuration store (chart values)
CONFIG_BACKEND = os.environ.get("SHIPLINE_CONFIG_BACKEND", "git")  # git | github
CONFIG_REPO_URL = os.environ.get("SHIPLINE_CONFIG_REPO_URL", "")
CONFIG_GITHUB_REPO = os.environ.get("SHIPLINE_CONFIG_GITHUB_REPO", "")  # owner/name
CONFIG_BRANCH = os.environ.get("SHIPLINE_CONFIG_BRANCH", "main")
CONFIG_VALUES_PATH = os.environ.get("SHIPLINE_CONFIG_VALUES_PATH", "chart/values.json")
CONFIG_TAG_FIELD = os.environ.get("SHIPLINE_CONFIG_TAG_FIELD", "image.tag")
PROPAGATE_ATTEMPTS = int(os.environ.get("SHIPLINE_PROPAGATE_ATTEMPTS", "5"))

GIT_AUTHOR_NAME = os.environ.get("GIT_AUTHOR_NAME", "shipline-bot")
GIT_AUTHOR_EMAIL = os.environ.get("GIT_AUTHOR_EMAIL", "bot@localhost")

# cluster reconciler
RECONCILER_URL = os.environ.get("SHIPLINE_RECONCILER_URL", "")
RECONCILER_APP = os.environ.get("SHIPLINE_RECONCILER_APP", "web")
RECONCILER_TOKEN_FILE = os.environ.get("SHIPLINE_RECONCILER_TOKEN_FILE", f"{SECRETS_DIR}/argocd_token.txt")
CONVERGENCE_TIMEOUT_S = float(os.environ.get("SHIPLINE_CONVERGENCE_TIMEOUT_S", "600"))
CONVERGENCE_INTERVAL_S = float(os.environ.get("SHIPLINE_CONVERGENCE_INTERVAL_S", "10"))

MAX_CONCURRENCY = int(os.environ.get("SHIPLINE_MAX_CONCURRENCY", "4"))


def default_pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        max_concurrency=MAX_CONCURRENCY,
        stages=[
            StageSpec(name="build", retry=RetryPolicy(max_attempts=2, backoff_s=5), timeout_s=APP_CMD_TIMEOUT * 2),
            StageSpec(name="publish", needs=["build"], retry=RetryPolicy(max_attempts=3, backoff_s=5), timeout_s=3600),
            StageSpec(name="propagate", needs=["publish"], retry=RetryPolicy(max_attempts=3, backoff_s=2), timeout_s=600),
        ],
    )


def load_pipeline_config(path: str = None) -> PipelineConfig:
    """Stage DAG from a JSON file, or the default build/publish/propagate chain."""
    path = path if path is not None else PIPELINE_FILE
    if not path:
        return default_pipeline_config()
    with open(path, "r", encoding="utf-8") as f:
        return PipelineConfig.model_validate(json.load(f))
