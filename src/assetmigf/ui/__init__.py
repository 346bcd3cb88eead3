"""终端界面"""
