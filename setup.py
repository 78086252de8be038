import os
from setuptools import setup, find_packages


def read_version():
    version = dict()
    with open(os.path.join("strtyper", "_version.py")) as f:
        exec(f.read(), version)
    return version["version"]


# Avoid pulling in dependencies if we are being installed within Read The Docs
if os.environ.get("READTHEDOCS") == "True":
    install_requires = []
else:
    install_requires = [
        "pysam>=0.18.0",
        "pyfaidx>=0.5.5.2",
        "numpy",
        "scipy",
        "xopen>=1.2.0",
    ]

setup(
    name="strtyper",
    version=read_version(),
    description="Genotyping of short tandem repeats from aligned sequencing reads",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.7",
    install_requires=install_requires,
    extras_require={
        "tests": ["pytest"],
    },
    entry_points={"console_scripts": ["strtyper = strtyper.__main__:main"]},
)
