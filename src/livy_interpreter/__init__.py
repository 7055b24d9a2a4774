from livy_interpreter.exc import *

__version__ = "0.1.0"
USER_AGENT_NAME = "PyLivyInterpreter"


def connect(properties=None, **kwargs):
    """
    Create an InterpreterGroup for a Livy server.

    Pass either Zeppelin-style ``properties`` (``{"zeppelin.livy.url": ...}``) or
    InterpreterConfig keyword arguments (``url=..., session_create_timeout=...``).
    """
    from .config import InterpreterConfig
    from .interpreter import InterpreterGroup

    if properties is not None:
        config = InterpreterConfig.from_properties(properties)
    else:
        config = InterpreterConfig(**kwargs)
    return InterpreterGroup(config)
