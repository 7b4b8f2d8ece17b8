"""Bootstrap steps.

Every module in this package is imported by registry.discover_steps(); any
BaseStep subclass found there becomes addressable by its aliases in config.
"""
