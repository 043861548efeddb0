from ._sgd import SGD, SharedParameter

__all__ = [SGD.__name__, "SharedParameter"]
