"""
Setup script for torch-ctc.

The package is pure PyTorch: the forward-backward recursions are vectorized
tensor operations and run on whatever device the posteriors live on.

To install for development:
    pip install -e ".[test]"
"""

from pathlib import Path

from setuptools import find_packages, setup


def read_version():
    """Read __version__ from the package without importing it."""
    init = Path(__file__).parent / "src" / "torch_ctc" / "__init__.py"
    for line in init.read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=")[1].strip().strip('"')
    raise RuntimeError("Unable to find __version__")


def main():
    setup(
        name="torch-ctc",
        version=read_version(),
        description="CTC objective, gradient and outlier-filtered training statistics for PyTorch",
        python_requires=">=3.9",
        package_dir={"": "src"},
        packages=find_packages(where="src"),
        install_requires=[
            "torch>=2.0",
            "edit_distance>=1.0",
        ],
        extras_require={
            "test": ["pytest>=7.0"],
        },
    )


if __name__ == "__main__":
    main()
