"""Taxfolio: capital gains and dividend tax reporting from broker exports."""

__version__ = "0.1.0"
