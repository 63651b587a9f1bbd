from setuptools import setup, find_packages

with open("README.md", "r", encoding='utf-8') as fh:
    long_description = fh.read()

setup(
    name="ldapunit",
    version="1.0.0",
    packages=find_packages(),
    include_package_data=True,
    package_data={
        'ldapunit': ["py.typed", "resources/*.ldif"],
        'ldapunit.test': ["*.ldif"],
    },
    install_requires=[
        'python-ldap',
        'case-insensitive-dictionary',
        'ldaptor',
        'Twisted',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'pytest11': ['ldapunit = ldapunit.pytest_plugin'],
    },
    description="Embedded LDAP directory server and assertions for use in testing.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['ldap', 'testing', 'unittest', 'pytest'],
    classifiers=[
        'Development Status :: 4 - Beta',
        'Environment :: Console',
        'Framework :: Pytest',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Software Development :: Testing',
    ],
)
