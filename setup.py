from setuptools import setup, find_packages

setup(
    name="bond-analytics-engine",
    version="0.1.0",
    description="Fixed income analytics: schedules, accrual, yields, spreads and lattice pricing of bonds",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy",
        "pandas",
        "scipy",
        "python-dateutil",
    ],
    extras_require={"test": ["pytest"]},
    python_requires=">=3.8",
)
