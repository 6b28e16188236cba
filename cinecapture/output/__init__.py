"""Fixed-size byte ring for keeping the most recent encoded frames."""