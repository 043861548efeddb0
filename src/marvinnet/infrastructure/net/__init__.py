from ._net import Net, format_bytes

__all__ = [Net.__name__, format_bytes.__name__]
