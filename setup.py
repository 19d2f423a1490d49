from setuptools import setup, find_packages

setup(
    name="zkpersona",
    version="0.1.0",
    description="Privacy-preserving humanity credentials — verification sessions, commitments and proof requests",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "pynacl>=1.5.0",
        "httpx>=0.25.0",
        "fastapi>=0.110.0",
        "pydantic>=2.0",
        "slowapi>=0.1.9",
        "python-json-logger>=3.1.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0", "pytest-asyncio>=0.23", "respx>=0.21"],
        "server": ["uvicorn>=0.27"],
    },
    entry_points={"console_scripts": ["zkpersona=zkpersona.cli:main"]},
    python_requires=">=3.9",
    license="CC0-1.0",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Security :: Cryptography",
        "Topic :: Software Development :: Libraries",
        "License :: CC0 1.0 Universal (CC0 1.0) Public Domain Dedication",
        "Programming Language :: Python :: 3",
    ],
    keywords="identity humanity credentials zero-knowledge nullifier commitment",
)
