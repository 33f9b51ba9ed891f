from setuptools import find_packages, setup

setup(
    name="czimap",
    version="0.1.0",
    description="Memory-mapped reader for Zeiss CZI (ZISRAW) microscopy files",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.9",
    install_requires=[
        "astropy",
        "dask[array]",
        "lxml",
        "numpy>=1.14.5",
        "resource-backed-dask-array",
        "typing-extensions",
    ],
    extras_require={
        "xarray": ["xarray"],
        "test": ["psutil", "pytest", "xarray"],
    },
)
