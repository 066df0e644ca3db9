"""Error taxonomy shared by the rollout controller and its collaborators."""


class MeshCanaryError(Exception):
    pass


class PlanValidationError(MeshCanaryError, ValueError):
    """A rollout plan or weight pair is malformed; raised before any write."""


class ConfigError(MeshCanaryError, ValueError):
    pass


# metrics side
class MetricsError(MeshCanaryError):
    pass


class TransientFetchError(MetricsError):
    """Metrics backend unreachable or timed out. Never a threshold breach."""


class NoDataError(MetricsError):
    """Zero requests observed for the revision in the window."""


class InvalidSampleError(TransientFetchError, ValueError):
    """A sample whose rate is not a finite fraction or whose count is negative."""


class QueryRejected(MetricsError):
    """The backend refused the query itself (bad PromQL, auth); retrying cannot help."""


# traffic-split side
class TrafficSplitError(MeshCanaryError):
    def __init__(self, route, message):
        super().__init__(f"{route}: {message}")
        self.route = route


class RouteNotFound(TrafficSplitError):
    pass


class WriteConflict(TrafficSplitError):
    pass


class TransientWriteError(TrafficSplitError):
    pass
