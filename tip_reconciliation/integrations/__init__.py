"""Mobile-money provider integrations (M-Pesa Daraja)."""
