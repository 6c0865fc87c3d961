import setuptools

"""
https://packaging.python.org/tutorials/packaging-projects/
"""

with open("README.md", "r") as fh:
    long_description = fh.read()


setuptools.setup(
    name="smcimpute",
    version="0.1.0",
    author="mederrata",
    author_email="info@mederrata.com",
    description="Substantive model compatible multiple imputation of missing covariates",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/mederrata/smcimpute",
    packages=setuptools.find_packages(
        exclude=["*.md", "*.tests", "*.tests.*"]
    ),
    include_package_data=True,
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: MIT",
        "Operating System :: Linux",
    ],
    python_requires='>=3.8',
    install_requires=[
        'numpy',
        'pandas',
        'scipy',
        'statsmodels',
        'patsy',
        'lifelines',
        'joblib>=1.3',
        'tqdm',
        'pyyaml',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
)
