"""Package setup for the Geo-Grid Local Rank Tracker."""

from pathlib import Path

from setuptools import setup, find_packages

HERE = Path(__file__).parent


def read_requirements(path: Path) -> list[str]:
    """Runtime requirements, skipping comments and the test-only pins."""
    lines = (line.strip() for line in path.read_text(encoding="utf-8").splitlines())
    return [line for line in lines if line and not line.startswith("#") and "pytest" not in line]


setup(
    name="geogrid-rank-tracker",
    version="1.0.0",
    description=(
        "Geo-grid local rank tracking: map-pack rankings sampled across a grid "
        "of points, with competitor share of voice and rank changes."
    ),
    long_description=(HERE / "README.md").read_text(encoding="utf-8"),
    long_description_content_type="text/markdown",
    packages=find_packages(include=["geogrid", "geogrid.*"]),
    python_requires=">=3.10",
    install_requires=read_requirements(HERE / "requirements.txt"),
    extras_require={
        "test": [
            "pytest>=8.0.0,<9.0",
            "pytest-asyncio>=0.23.0,<1.0",
            "pytest-cov>=4.1.0,<6.0",
        ],
    },
    entry_points={"console_scripts": ["geogrid=geogrid.cli:main"]},
    classifiers=[
        "Development Status :: 4 - Beta",
        "Topic :: Internet :: WWW/HTTP :: Indexing/Search",
        "Programming Language :: Python :: 3",
        "Framework :: Pytest",
    ],
    keywords=["local-seo", "geo-grid", "rank-tracking", "map-pack", "dataforseo"],
)
