from sqlstream.utils import logging, type_guards

__all__ = ("logging", "type_guards")
