from fastapi import status


class AnalysisError(Exception):
    """Base for failures that end up as an HTTP response."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MissingFile(AnalysisError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "Upload has no 'file' part"):
        super().__init__(message)


class MalformedUpload(AnalysisError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidOptions(AnalysisError):
    status_code = status.HTTP_400_BAD_REQUEST


class EngineFailure(AnalysisError):
    status_code = status.HTTP_502_BAD_GATEWAY


class EngineTimeout(EngineFailure):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class HarvestIOFailure(AnalysisError):
    pass


class NotFound(AnalysisError):
    status_code = status.HTTP_404_NOT_FOUND
