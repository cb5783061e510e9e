"""BYOK Chat Meta information.
   BYOK Chat keeps user-supplied AI provider keys in a local encrypted vault
   and streams chat responses straight from the provider.
"""
__title__ = 'byok_chat'
__description__ = (
   'Local encrypted credential vault and streaming provider abstraction '
   'for bring-your-own-key chat clients.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2025 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/byok-chat'
