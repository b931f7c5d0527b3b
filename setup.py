from setuptools import find_packages, setup

setup(
    name="mdp",
    version="0.1.0",
    packages=find_packages(
        include=[
            "mdp_common",
            "mdp_common.*",
            "mdp_persistence",
            "mdp_persistence.*",
            "mdp_server",
            "mdp_server.*",
            "mdp_client",
            "mdp_client.*",
            "mdp_agent",
            "mdp_agent.*",
            "mdp_worker",
            "mdp_worker.*",
            "mdp_admin",
            "mdp_admin.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "fastapi>=0.104.0",
        "pydantic>=2.0",
        "uvicorn>=0.24.0",
        "click>=8.1.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "mdp-server=mdp_server.__main__:main",
            "mdp-agent=mdp_agent.__main__:main",
            "mdp-worker=mdp_worker.__main__:main",
            "mdp-admin=mdp_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
