import setuptools
from pathlib import Path

ROOT = Path(__file__).parent


def read_requirements(filename: str = "requirements.txt") -> list[str]:
    req_path = ROOT / filename
    if not req_path.exists():
        return []
    reqs: list[str] = []
    for line in req_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        reqs.append(line)
    return reqs


long_description = (ROOT / "README_PYPI.md").read_text(encoding="utf-8")

setuptools.setup(
    name="marvinnet",
    version="0.1.0",  # PEP 440 compliant
    description=(
        "marvinnet is a multi-replica neural network training engine: it builds "
        "a computation graph from a JSON architecture description, runs "
        "forward/backward passes on numpy devices and synchronizes shared "
        "parameters across replicas."
    ),
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    package_dir={"": "src"},
    packages=setuptools.find_packages(where="src"),
    python_requires=">=3.10",
    install_requires=read_requirements(),
    extras_require={"test": ["pytest"]},
    entry_points={"console_scripts": ["marvinnet = marvinnet.cli:main"]},
    include_package_data=True,
    zip_safe=False,
)
