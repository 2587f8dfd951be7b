"""clar2wasm — Clarity smart contracts to WebAssembly"""

__version__ = "0.1.0"
