import pathlib

from setuptools import find_packages, setup

CWD = pathlib.Path(__file__).parent

README = (CWD / 'README.rst').read_text()

INSTALL_REQUIRES = [
    'anndata',
    'igraph',
    'leidenalg',
    'numpy',
    'pandas',
    'psutil',
    'scipy',
    'threadpoolctl',
]

TESTS_REQUIRE = [
    'pytest',
]

DEVELOP_REQUIRES = [
    'autopep8',
    'isort',
    'mypy',
    'pylint',
    'sphinx',
    'sphinx_rtd_theme'
]

setup(
    name='scqc',
    version='0.1.0',
    description='Single-cell RNA Sequencing Quality Control and Normalization',
    long_description=README,
    long_description_content_type='text/x-rst',
    author='scqc developers',
    license='MIT',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Topic :: Software Development :: Libraries',
        'Topic :: Scientific/Engineering :: Bio-Informatics',
        'Intended Audience :: Developers',
        'Intended Audience :: Science/Research',
    ],
    packages=find_packages(include=['scqc', 'scqc.*']),
    python_requires='>=3.8',
    install_requires=INSTALL_REQUIRES,
    tests_require=TESTS_REQUIRE,
    extras_require={
        'test': TESTS_REQUIRE,
        'develop': INSTALL_REQUIRES + TESTS_REQUIRE + DEVELOP_REQUIRES,
    },
)
