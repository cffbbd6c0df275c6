"""检索增强相关模块：嵌入、向量库与检索编排。"""
