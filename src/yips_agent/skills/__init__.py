"""Skills（search / fetch / build / todos / virtual_terminal）。"""
