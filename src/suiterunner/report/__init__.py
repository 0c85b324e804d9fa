"""Result aggregation and the XML result document."""
