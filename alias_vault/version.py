"""Alias Vault Meta information.
   Alias Vault keeps disposable forwarding addresses encrypted at rest
   and synchronized across a user's devices.
"""
__title__ = 'alias_vault'
__description__ = (
   'Alias Vault keeps disposable forwarding addresses encrypted at rest '
   'and synchronized across devices.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2024 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/alias-vault'
