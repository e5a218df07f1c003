from setuptools import setup, find_packages

setup(
    name="crtpower",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "numpy",
        "pandas",
        "matplotlib",
        "scipy",
        "statsmodels>=0.13",
        "joblib>=1.4",
    ],
    extras_require={
        "progress": ["tqdm"],
        "test": ["pytest"],
    },
    description="Monte Carlo Power Analysis for Cluster-Randomized Trials",
)
