from setuptools import find_packages, setup

setup(
    name="cml-runner",
    version="0.1.0",
    packages=find_packages(
        include=[
            "runner_common",
            "runner_common.*",
            "runner_drivers",
            "runner_drivers.*",
            "runner_terraform",
            "runner_terraform.*",
            "runner_controller",
            "runner_controller.*",
            "runner_cli",
            "runner_cli.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "click>=8.1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "cml=runner_cli.cli:main",
        ],
    },
    python_requires=">=3.11",
)
