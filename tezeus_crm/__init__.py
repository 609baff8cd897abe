"""Tezeus CRM WhatsApp message pipeline."""
