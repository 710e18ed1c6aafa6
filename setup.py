from setuptools import find_packages, setup

setup(
    name="nas-controller",
    version="1.0.0",
    packages=find_packages(
        include=[
            "nas_common",
            "nas_common.*",
            "nas_persistence",
            "nas_persistence.*",
            "nas_controller",
            "nas_controller.*",
            "nas_server",
            "nas_server.*",
            "nas_client",
            "nas_client.*",
            "nas_admin",
            "nas_admin.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "fastapi>=0.104.0",
        "uvicorn[standard]>=0.24.0",
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
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
            "nas=nas_client.cli:main",
            "nas-controller=nas_server.__main__:main",
            "nas-admin=nas_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
