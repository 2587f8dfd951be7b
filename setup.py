from setuptools import setup, find_packages

setup(
    name="clar2wasm",
    version="0.1.0",
    description="clar2wasm — compile Clarity smart contracts to WebAssembly",
    packages=find_packages(include=["clar2wasm", "clar2wasm.*"]),
    python_requires=">=3.10",
    install_requires=[
        "z3-solver>=4.12.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": ["pytest>=7.0", "wasmtime>=20"],
    },
    entry_points={
        "console_scripts": [
            "clar2wasm=clar2wasm.cli:run",
        ],
    },
)
