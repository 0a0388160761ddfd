"""Calendar module — public holidays and working-day arithmetic."""
