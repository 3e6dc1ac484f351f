

from setuptools import setup, find_packages

with open('README.rst', encoding='utf-8') as readme_file:
    readme = readme_file.read()

with open('HISTORY.rst', encoding='utf-8') as history_file:
    history = history_file.read()

with open('requirements.txt', encoding='utf-8') as requirements_file:
    all_pkgs = requirements_file.readlines()

requirements = [pkg.strip() for pkg in all_pkgs if pkg.strip() and "#" not in pkg]
test_requirements = ['pytest>=7']

setup(
    name='marks-vault',
    author='Cheng Chen',
    author_email='chenzi00103@gmail.com',
    description='MarksVault automation engine: scheduled and event-driven bookmark tasks with GitHub backup, restore, organise and push actions',
    python_requires='>=3.10',
    classifiers=[
        'Development Status :: 2 - Pre-Alpha',
        'Intended Audience :: Developers',
        'Natural Language :: English',
        'Programming Language :: Python :: 3.10',
    ],
    install_requires=requirements,
    extras_require={'test': test_requirements},
    long_description=readme + '\n\n' + history,
    include_package_data=True,
    package_data={'marks_vault': ['conf/*.yaml']},
    keywords='marks_vault',
    packages=find_packages(include=['marks_vault', 'marks_vault.*']),
    test_suite='marks_vault.automation.tests',
    tests_require=test_requirements,
    version='0.1.0',
    zip_safe=False,
)
