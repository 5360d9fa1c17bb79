# src/dealmaker/node/__init__.py
"""
Adapters around the go-filecoin executable.

These are thin: they spawn the binary, decode its JSON output into pydantic
models and surface failures as NodeCommandError. Deal policy lives in
dealmaker.market.
"""
