from setuptools import setup, find_packages

setup(
    name="powerlmm",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy",
        "pandas",
        "scipy",
        "statsmodels",
        "joblib",
        "tqdm",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.8",
    description="Power Analysis for Longitudinal Multilevel Models",
)
