from setuptools import setup, find_packages

setup(
    name="soundgraph-affinity",
    version="0.1",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "tenacity",
        "psycopg2-binary",
        "pandas",
        "sqlalchemy>=2.0",
        "pyyaml",
        "python-dotenv",
        "networkx",
        "loguru"
    ],
    extras_require={
        "test": ["pytest"],
    },
)
