from .config import Config, CompileOptions, SessionOptions  # noqa: F401
from .env import init_environment  # noqa: F401
from .errors import (  # noqa: F401
    GenRuntimeError, ConfigurationError, BackendError, CompileError, LoadError, EvaluationError,
)
from .generator import Generator, GeneratorParams  # noqa: F401
from .model import Model, DecoderModel, PipelineModel, create_model  # noqa: F401
from .state import State, DecoderState, PipelineState  # noqa: F401
