"""shran - declarative build orchestration for customized cryptocurrency node binaries."""

__version__ = "1.0.0"
