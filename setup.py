# setup.py
from setuptools import setup, find_packages

setup(
    name="proof_of_history",
    version="0.1.0",
    packages=find_packages(),
    python_requires=">=3.8",
    install_requires=[
        "pycryptodome",       # keccak256
        "blake3",             # BLAKE3 ticks
        "psutil",             # monitoring, worker sizing
        "prometheus_client",  # pipeline metrics
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "poh-demo=proof_of_history.demo:main",
            "poh-bench=proof_of_history.benchmark:main",
        ],
    },
)
