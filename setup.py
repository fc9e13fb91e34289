from setuptools import setup


setup(
    name="sheet-stitcher",
    version="0.1.0",
    description="Reconcile AI-proposed schemas and value corrections into one consistent CSV",
    packages=["sheet_stitcher"],
    python_requires=">=3.10",
    install_requires=[
        "pandas",
        "chardet",
        "openpyxl",
        "requests",
    ],
    entry_points={
        "console_scripts": [
            "sheet-stitcher=sheet_stitcher.cli:main",
        ]
    },
)
