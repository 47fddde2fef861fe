"""Browser session and page outcome evaluation."""
