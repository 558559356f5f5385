"""Utilities package: decorators, date helpers and error types.

Import from the submodules directly; the models import `utils.dates`, so
this package must not pull in the models itself.
"""
