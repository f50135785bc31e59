"""Navigator Vault Meta information.
   Navigator Vault keeps password entries encrypted at rest and
   hands them out to local clients through short-lived sessions.
"""
__title__ = 'navigator_vault'
__description__ = (
   'Navigator Vault is a local secrets vault with per-entry '
   'authenticated encryption and session-gated API access.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-vault'
