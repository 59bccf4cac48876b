class EmbdError(Exception):
    """
    A fatal error while setting up a run. The command line exits with
    status 1 when one of these is raised.
    """


class ModelLoadError(EmbdError):
    pass


class PromptFileError(EmbdError):
    pass


class OutputFileError(EmbdError):
    pass
