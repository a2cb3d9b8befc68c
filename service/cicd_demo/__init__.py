"""CI/CD demo application with an instrumentation pipeline"""

__version__ = "1.0.0"
